"""In-memory stand-ins for the network boundary."""

import hashlib
from collections import defaultdict

import base58
from solders.transaction import Transaction

import bulkmint.constants as C
from bulkmint.errors import AccountNotFound, SubmissionRejected, TransientNetworkError
from bulkmint.models import Checkpoint, SignedBatch, SubmissionOutcome


class ProcessKilled(BaseException):
    """Simulated kill of the process; not an Exception, so no handler catches it."""


def address(seed: str) -> str:
    """Deterministic 32-byte identity string for test rows."""
    return base58.b58encode(hashlib.sha256(seed.encode()).digest()).decode()


def account_keys(wire: bytes) -> list[str]:
    """Account key table of a serialized transaction."""
    return [str(k) for k in Transaction.from_bytes(wire).message.account_keys]


class FakeNetwork:
    """Implements the network Protocol against dictionaries.

    Failure injection:
      reject_next      -- number of upcoming submissions to reject
      crash_on_submit  -- 1-based submission number that raises a non-library error
      land_then_expire -- number of upcoming confirmed submissions that land but report expiry
      crash_after_confirm -- 1-based submission number that lands, then raises ProcessKilled
      auto_confirm     -- whether fire-and-forget submissions become confirmed
    """

    def __init__(self) -> None:
        self.accounts: dict[str, bytes] = {}
        self.program_accounts: dict[str, list[tuple[str, bytes]]] = defaultdict(list)
        self.statuses: dict[str, str] = {}
        self.height = 1_000
        self.validity = 150
        self.sent: list[SignedBatch] = []
        self.checkpoints: list[Checkpoint] = []
        self.submit_calls = 0
        self.reject_next = 0
        self.crash_on_submit: int | None = None
        self.land_then_expire = 0
        self.crash_after_confirm: int | None = None
        self.auto_confirm = False
        self.fail_reads: int = 0

    # ---- reads -------------------------------------------------------------

    async def fetch_account_state(self, addr: str) -> bytes:
        if self.fail_reads:
            self.fail_reads -= 1
            raise TransientNetworkError("connection reset")
        if addr not in self.accounts:
            raise AccountNotFound(f"Account {addr} not found", key=addr)
        return self.accounts[addr]

    async def fetch_program_accounts(self, program_id: str, filters: list[dict]) -> list[tuple[str, bytes]]:
        out = []
        for addr, raw in self.program_accounts[program_id]:
            ok = True
            for f in filters:
                if "dataSize" in f:
                    ok &= len(raw) == f["dataSize"]
                else:
                    want = base58.b58decode(f["memcmp"]["bytes"])
                    off = f["memcmp"]["offset"]
                    ok &= raw[off:off + len(want)] == want
            if ok:
                out.append((addr, raw))
        return out

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return 890_880 + size * 6_960

    async def fetch_checkpoint_token(self) -> Checkpoint:
        n = len(self.checkpoints)
        token = base58.b58encode(hashlib.sha256(f"checkpoint-{n}".encode()).digest()).decode()
        checkpoint = Checkpoint(token=token, last_valid_height=self.height + self.validity)
        self.checkpoints.append(checkpoint)
        return checkpoint

    async def current_height(self) -> int:
        return self.height

    async def fetch_signature_status(self, signature: str) -> str | None:
        return self.statuses.get(signature)

    # ---- writes ------------------------------------------------------------

    def _accept(self, signed: SignedBatch) -> None:
        self.submit_calls += 1
        if self.crash_on_submit is not None and self.submit_calls == self.crash_on_submit:
            raise RuntimeError("process killed")
        if self.reject_next:
            self.reject_next -= 1
            raise SubmissionRejected("Blockhash not found")
        self.sent.append(signed)

    async def submit_only(self, signed: SignedBatch) -> SubmissionOutcome:
        self._accept(signed)
        if self.auto_confirm:
            self.statuses[signed.signature] = "confirmed"
        return SubmissionOutcome(state=C.BatchState.SUBMITTED, signature=signed.signature, checkpoint=signed.checkpoint)

    async def submit_and_confirm(self, signed: SignedBatch) -> SubmissionOutcome:
        self._accept(signed)
        self.statuses[signed.signature] = "confirmed"
        if self.crash_after_confirm is not None and self.submit_calls == self.crash_after_confirm:
            raise ProcessKilled
        state = C.BatchState.CONFIRMED
        if self.land_then_expire:
            self.land_then_expire -= 1
            state = C.BatchState.TIMED_OUT
        return SubmissionOutcome(state=state, signature=signed.signature, checkpoint=signed.checkpoint)

    def destinations(self) -> list[str]:
        """Second account key of every sent transaction (the transfer destination)."""
        return [account_keys(s.wire)[1] for s in self.sent]
