from typing import Final
from enum import StrEnum

# Program ids the instruction builders target
SYSTEM_PROGRAM_ID: Final = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID: Final = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
METADATA_PROGRAM_ID: Final = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"
RENT_SYSVAR_ID: Final = "SysvarRent111111111111111111111111111111111"

# Seeds used by the record program's addressing convention
PREFIX: Final = b"metadata"
EDITION: Final = b"edition"
EDITION_MARKER_BIT_SIZE: Final = 248

MAX_NAME_LENGTH: Final = 32
MAX_SYMBOL_LENGTH: Final = 10
MAX_URI_LENGTH: Final = 200

MINT_LEN: Final = 82
TOKEN_ACCOUNT_LEN: Final = 165


class OpKind(StrEnum):
    CREATE_RECORD         = "create-record"
    CREATE_MASTER_EDITION = "create-master-edition"
    MINT_EDITION          = "mint-edition"
    MINT_TOKENS           = "mint-tokens"
    UPDATE_RECORD         = "update-record"
    TRANSFER              = "transfer"
    PUFF_RECORD           = "puff-record"


class OpStatus(StrEnum):
    PENDING   = "Pending"
    IN_FLIGHT = "InFlight"
    COMPLETED = "Completed"
    SKIPPED   = "Skipped"
    FAILED    = "Failed"


class BatchState(StrEnum):
    BUILT     = "BUILT"
    SIGNED    = "SIGNED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED  = "CONFIRMED"
    REJECTED  = "REJECTED"
    TIMED_OUT = "TIMED_OUT"


class SubmitMode(StrEnum):
    CONFIRMED       = "confirmed"
    FIRE_AND_FORGET = "fire-and-forget"


class SignerRole(StrEnum):
    PAYER             = "payer"
    UPDATE_AUTHORITY  = "update-authority"
    MINT_AUTHORITY    = "mint-authority"
    ACCOUNT_AUTHORITY = "account-authority"
    EPHEMERAL         = "ephemeral"


class UnitState(StrEnum):
    PENDING    = "PENDING"
    CONFIRMED  = "CONFIRMED"
    DROPPED    = "DROPPED"
    REOPENED   = "REOPENED"
    SUPERSEDED = "SUPERSEDED"


# Status order; a LogicalOperation never moves to a lower rank
STATUS_RANK: Final = {
    OpStatus.PENDING: 0,
    OpStatus.IN_FLIGHT: 1,
    OpStatus.FAILED: 2,
    OpStatus.SKIPPED: 2,
    OpStatus.COMPLETED: 3,
}

MAX_INSTRUCTIONS = 20
MAX_TRANSACTION_BYTES = 1232
RETRY_DELAY = 1.0
POLL_INTERVAL = 0.5
RPC_TIMEOUT = 30.0

__all__ = [
    "EDITION",
    "EDITION_MARKER_BIT_SIZE",
    "MAX_INSTRUCTIONS",
    "MAX_NAME_LENGTH",
    "MAX_SYMBOL_LENGTH",
    "MAX_TRANSACTION_BYTES",
    "MAX_URI_LENGTH",
    "METADATA_PROGRAM_ID",
    "MINT_LEN",
    "POLL_INTERVAL",
    "PREFIX",
    "RENT_SYSVAR_ID",
    "RETRY_DELAY",
    "RPC_TIMEOUT",
    "STATUS_RANK",
    "SYSTEM_PROGRAM_ID",
    "TOKEN_ACCOUNT_LEN",
    "TOKEN_PROGRAM_ID",

    ######
    "BatchState",
    "OpKind",
    "OpStatus",
    "SignerRole",
    "SubmitMode",
    "UnitState",
]
