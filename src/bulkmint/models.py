"""Domain records shared by the planner, chunker, submission engine and ledger."""

import time
from dataclasses import dataclass, field, replace
from typing import Any, TYPE_CHECKING

import bulkmint.constants as C

if TYPE_CHECKING:
    from bulkmint.signers import SignerIdentity


@dataclass(slots=True)
class LogicalOperation:
    """One input row of external work.

    ``key`` is the row's natural identity (a public key string, or ``mint:index``),
    ``repeat`` is the number of units the row expands into (airdrop rows), and
    ``status`` only ever moves forward (see ``C.STATUS_RANK``).
    """

    index: int
    kind: C.OpKind
    key: str
    params: dict[str, Any] = field(default_factory=dict)
    repeat: int = 1
    status: C.OpStatus = C.OpStatus.PENDING

    def advance(self, status: C.OpStatus) -> None:
        if C.STATUS_RANK[status] < C.STATUS_RANK[self.status]:
            raise ValueError(f"{self.key}: status cannot go from {self.status} back to {status}")
        self.status = status

    def __str__(self):
        return f"{self.kind} -- {self.key} -- {self.status}"


@dataclass(frozen=True, slots=True)
class AccountMeta:
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True, slots=True)
class Instruction:
    program_id: str
    accounts: tuple[AccountMeta, ...]
    data: bytes
    label: str = ""

    @property
    def signer_addresses(self) -> tuple[str, ...]:
        return tuple(m.pubkey for m in self.accounts if m.is_signer)


@dataclass(frozen=True, slots=True)
class InstructionSet:
    """Ordered instructions for exactly one LogicalOperation (or one unit of it).

    ``signers`` is the exact declared signer set, ``creates`` the addresses this set
    allocates, and ``reads_committed`` the addresses that must already be committed
    on the ledger before this set executes.
    """

    op_key: str
    unit: int
    instructions: tuple[Instruction, ...]
    signers: tuple["SignerIdentity", ...]
    payer: "SignerIdentity"
    creates: frozenset[str] = frozenset()
    reads_committed: frozenset[str] = frozenset()
    outputs: dict[str, Any] = field(default_factory=dict, compare=False)

    def __len__(self) -> int:
        return len(self.instructions)


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Recent reference point a transaction is bound to; expires after ``last_valid_height``."""

    token: str
    last_valid_height: int

    @classmethod
    def from_result(cls, result: dict) -> "Checkpoint":
        value = result["value"]
        return cls(token=value["blockhash"], last_valid_height=int(value["lastValidBlockHeight"]))


@dataclass(slots=True)
class TransactionBatch:
    sets: list[InstructionSet]
    payer: "SignerIdentity"
    checkpoint: Checkpoint | None = None
    signers: list["SignerIdentity"] = field(default_factory=list)
    attempts: int = 0
    state: C.BatchState = C.BatchState.BUILT
    signatures: list[str] = field(default_factory=list)

    @property
    def instructions(self) -> list[Instruction]:
        return [ix for s in self.sets for ix in s.instructions]

    @property
    def op_keys(self) -> list[str]:
        seen: dict[str, None] = {}
        for s in self.sets:
            seen.setdefault(s.op_key, None)
        return list(seen)

    def __len__(self) -> int:
        return sum(len(s) for s in self.sets)

    def __str__(self):
        return f"batch[{len(self)} ix, {len(self.sets)} sets] -- {self.state} -- attempt {self.attempts}"


@dataclass(frozen=True, slots=True)
class SignedBatch:
    wire: bytes
    signature: str
    checkpoint: Checkpoint


@dataclass(slots=True)
class SubmissionOutcome:
    state: C.BatchState
    signature: str | None = None
    error: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    checkpoint: Checkpoint | None = None
    finalized_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        # fire-and-forget batches stop at SUBMITTED
        return self.state in (C.BatchState.CONFIRMED, C.BatchState.SUBMITTED)


@dataclass(frozen=True, slots=True)
class Cursor:
    """Position in the input: row index plus the unit within a repeated row."""

    row: int
    unit: int = 0

    def next_unit(self) -> "Cursor":
        return replace(self, unit=self.unit + 1)
