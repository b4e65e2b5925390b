"""Network boundary: a Protocol the orchestrator depends on, and its JSON-RPC implementation."""

import asyncio
import base64
import itertools
import logging
from typing import Any, Protocol

import httpx

import bulkmint.constants as C
from bulkmint.errors import AccountNotFound, SubmissionRejected, TransientNetworkError
from bulkmint.models import Checkpoint, SignedBatch, SubmissionOutcome
from bulkmint.wire import encode_wire

log = logging.getLogger("bulkmint.network")


class Network(Protocol):
    async def fetch_account_state(self, address: str) -> bytes: ...
    async def fetch_program_accounts(self, program_id: str, filters: list[dict]) -> list[tuple[str, bytes]]: ...
    async def minimum_balance_for_rent_exemption(self, size: int) -> int: ...
    async def fetch_checkpoint_token(self) -> Checkpoint: ...
    async def submit_only(self, signed: SignedBatch) -> SubmissionOutcome: ...
    async def submit_and_confirm(self, signed: SignedBatch) -> SubmissionOutcome: ...
    async def fetch_signature_status(self, signature: str) -> str | None: ...
    async def current_height(self) -> int: ...


def memcmp(offset: int, address: str) -> dict:
    return {"memcmp": {"offset": offset, "bytes": address}}


def data_size(size: int) -> dict:
    return {"dataSize": size}


class JsonRpcNetwork:
    """Async JSON-RPC client for the ledger network.

    Every method may raise ``TransientNetworkError``. ``submit_and_confirm`` blocks
    until the signature reaches the configured commitment, the network reports an
    error for it, or its checkpoint expires.
    """

    def __init__(
        self,
        url: str,
        *,
        commitment: str = "confirmed",
        timeout: float = C.RPC_TIMEOUT,
        poll_interval: float = C.POLL_INTERVAL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.commitment = commitment
        self.poll_interval = poll_interval
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "JsonRpcNetwork":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _rpc(self, method: str, *params: Any) -> dict:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            resp = await self.client.post(self.url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            raise TransientNetworkError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise TransientNetworkError(f"{method} returned a non-JSON body") from e
        if "error" in body:
            err = body["error"]
            if method == "sendTransaction":
                raise SubmissionRejected(f"{err.get('code')}: {err.get('message')}")
            raise TransientNetworkError(f"{method}: {err.get('code')}: {err.get('message')}")
        return body["result"]

    async def fetch_account_state(self, address: str) -> bytes:
        result = await self._rpc("getAccountInfo", address, {"encoding": "base64", "commitment": self.commitment})
        value = result.get("value")
        if value is None:
            raise AccountNotFound(f"Account {address} not found", key=address)
        return base64.b64decode(value["data"][0])

    async def fetch_program_accounts(self, program_id: str, filters: list[dict]) -> list[tuple[str, bytes]]:
        result = await self._rpc(
            "getProgramAccounts",
            program_id,
            {"encoding": "base64", "commitment": self.commitment, "filters": filters},
        )
        return [(a["pubkey"], base64.b64decode(a["account"]["data"][0])) for a in result]

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        return int(await self._rpc("getMinimumBalanceForRentExemption", size))

    async def fetch_checkpoint_token(self) -> Checkpoint:
        result = await self._rpc("getLatestBlockhash", {"commitment": self.commitment})
        return Checkpoint.from_result(result)

    async def current_height(self) -> int:
        return int(await self._rpc("getBlockHeight", {"commitment": self.commitment}))

    async def fetch_signature_status(self, signature: str) -> str | None:
        """Return the confirmation status, ``"failed"`` for an errored transaction, or None if unknown."""
        result = await self._rpc("getSignatureStatuses", [signature], {"searchTransactionHistory": True})
        status = result["value"][0]
        if status is None:
            return None
        if status.get("err") is not None:
            return "failed"
        return status.get("confirmationStatus") or "processed"

    async def submit_only(self, signed: SignedBatch) -> SubmissionOutcome:
        signature = await self._rpc(
            "sendTransaction",
            encode_wire(signed.wire),
            {"encoding": "base64", "preflightCommitment": self.commitment},
        )
        log.debug("Submitted %s", signature)
        return SubmissionOutcome(state=C.BatchState.SUBMITTED, signature=signature, checkpoint=signed.checkpoint)

    async def submit_and_confirm(self, signed: SignedBatch) -> SubmissionOutcome:
        outcome = await self.submit_only(signed)
        wanted = {"confirmed", "finalized"} if self.commitment != "finalized" else {"finalized"}
        while True:
            status = await self.fetch_signature_status(outcome.signature)
            if status == "failed":
                raise SubmissionRejected(f"Transaction {outcome.signature} failed on ledger")
            if status in wanted:
                outcome.state = C.BatchState.CONFIRMED
                return outcome
            if await self.current_height() > signed.checkpoint.last_valid_height:
                log.warning("Checkpoint expired before %s confirmed", outcome.signature)
                outcome.state = C.BatchState.TIMED_OUT
                return outcome
            await asyncio.sleep(self.poll_interval)
