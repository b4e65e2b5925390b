"""Input row readers and the static policy table of every flow."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import base58

import bulkmint.constants as C
import bulkmint.retry as R
from bulkmint.errors import ConfigurationError, StateDecodeError
from bulkmint.layouts import Key, Record
from bulkmint.models import LogicalOperation
from bulkmint.network import Network, memcmp

log = logging.getLogger("bulkmint.flows")


@dataclass(frozen=True, slots=True)
class FlowPolicy:
    """How a flow submits and what it records.

    ``counted`` flows mirror a per-row processed counter instead of a completion
    marker. ``grouped`` flows pack many rows into each batch and record every row
    of a batch once it confirms.
    """

    name: str
    kind: C.OpKind
    mode: C.SubmitMode
    policy: R.BackoffPolicy
    counted: bool = False
    grouped: bool = False
    max_instructions: int = C.MAX_INSTRUCTIONS


FLOWS: dict[str, FlowPolicy] = {
    "create-record": FlowPolicy("create-record", C.OpKind.CREATE_RECORD, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER),
    "create-master-edition": FlowPolicy(
        "create-master-edition", C.OpKind.CREATE_MASTER_EDITION, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER
    ),
    "mint-edition": FlowPolicy("mint-edition", C.OpKind.MINT_EDITION, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER),
    "airdrop": FlowPolicy("airdrop", C.OpKind.MINT_EDITION, C.SubmitMode.FIRE_AND_FORGET, R.ADVANCE, counted=True),
    "mint-tokens": FlowPolicy("mint-tokens", C.OpKind.MINT_TOKENS, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER),
    "update-records": FlowPolicy("update-records", C.OpKind.UPDATE_RECORD, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER),
    "refunds": FlowPolicy("refunds", C.OpKind.TRANSFER, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER),
    "puff": FlowPolicy("puff", C.OpKind.PUFF_RECORD, C.SubmitMode.CONFIRMED, R.RETRY_FOREVER, grouped=True),
}


def read_rows(path: str | Path) -> list[Any]:
    p = Path(path)
    try:
        data = json.loads(p.read_text())
    except FileNotFoundError as e:
        raise ConfigurationError(f"Input file {p} does not exist") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Input file {p} is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise ConfigurationError(f"Input file {p} must hold a JSON array")
    return data


def select_range(ops: list[LogicalOperation], start: int = 0, end: int | None = None) -> list[LogicalOperation]:
    """Rows with ``start <= index < end``; disjoint ranges never share a row."""
    if start < 0 or (end is not None and end < start):
        raise ConfigurationError(f"Invalid range [{start}, {end})")
    return [op for op in ops if op.index >= start and (end is None or op.index < end)]


def _identity_of(item: dict, *names: str) -> str:
    for n in names:
        if item.get(n):
            return item[n]
    raise ConfigurationError(f"Row {item!r} has none of the fields {', '.join(names)}")


def airdrop_ops(rows: list[Any], master_mint: str) -> list[LogicalOperation]:
    """Rows are ``[identity, count]`` pairs or objects with ``pubkey`` and ``count``."""
    ops = []
    for i, row in enumerate(rows):
        match row:
            case [str() as identity, int() as count]:
                pass
            case {"count": int() as count}:
                identity = _identity_of(row, "pubkey", "key", "recipient")
            case _:
                raise ConfigurationError(f"Row {i}: expected [identity, count], got {row!r}")
        if count < 0:
            raise ConfigurationError(f"Row {i}: negative count for {identity}")
        ops.append(
            LogicalOperation(
                index=i,
                kind=C.OpKind.MINT_EDITION,
                key=identity,
                params={"master_mint": master_mint, "recipient": identity},
                repeat=count,
            )
        )
    return ops


def update_ops(rows: list[Any]) -> list[LogicalOperation]:
    """Rows are ``[record, uri]`` pairs or objects with ``record`` plus any of the updatable fields."""
    ops = []
    for i, row in enumerate(rows):
        match row:
            case [str() as record, str() as uri]:
                params = {"record": record, "uri": uri}
            case {"record": str() as record}:
                params = dict(row)
            case _:
                raise ConfigurationError(f"Row {i}: expected [record, uri], got {row!r}")
        ops.append(LogicalOperation(index=i, kind=C.OpKind.UPDATE_RECORD, key=record, params=params))
    return ops


def refund_ops(rows: list[Any]) -> list[LogicalOperation]:
    """Rows are ``{"pubkey": ..., "amount": ...}`` objects or ``[pubkey, amount]`` pairs."""
    ops = []
    for i, row in enumerate(rows):
        match row:
            case {"amount": int() as amount}:
                pubkey = _identity_of(row, "pubkey", "destination")
            case [str() as pubkey, int() as amount]:
                pass
            case _:
                raise ConfigurationError(f"Row {i}: expected a pubkey and an integer amount, got {row!r}")
        ops.append(
            LogicalOperation(
                index=i,
                kind=C.OpKind.TRANSFER,
                key=pubkey,
                params={"destination": pubkey, "amount": amount},
            )
        )
    return ops


def record_ops(rows: list[Any]) -> list[LogicalOperation]:
    """Create-record rows; ``key`` defaults to the record name."""
    ops = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise ConfigurationError(f"Row {i}: expected an object, got {row!r}")
        key = row.get("key") or _identity_of(row, "name")
        ops.append(LogicalOperation(index=i, kind=C.OpKind.CREATE_RECORD, key=key, params=dict(row)))
    return ops


def mint_token_ops(rows: list[Any]) -> list[LogicalOperation]:
    ops = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict) or "mint" not in row or "amount" not in row:
            raise ConfigurationError(f"Row {i}: expected an object with mint and amount, got {row!r}")
        key = row.get("key") or f"{row['mint']}:{i}"
        ops.append(LogicalOperation(index=i, kind=C.OpKind.MINT_TOKENS, key=key, params=dict(row)))
    return ops


def single_op(kind: C.OpKind, key: str, **params) -> list[LogicalOperation]:
    return [LogicalOperation(index=0, kind=kind, key=key, params={k: v for k, v in params.items() if v is not None})]


async def puff_ops(network: Network, program_id: str = C.METADATA_PROGRAM_ID) -> list[LogicalOperation]:
    """Records of ``program_id`` that are shorter than their maximum size or lack an edition nonce.

    Sorted by address so index ranges are stable between invocations.
    """
    key_filter = memcmp(0, base58.b58encode(bytes([Key.METADATA_V1])).decode())
    accounts = await network.fetch_program_accounts(program_id, [key_filter])
    ops = []
    for address, raw in sorted(accounts):
        try:
            record = Record.decode(raw)
        except StateDecodeError as e:
            log.warning("Skipping %s: %s", address, e)
            continue
        if record.needs_puffing():
            ops.append(
                LogicalOperation(index=len(ops), kind=C.OpKind.PUFF_RECORD, key=address, params={"record": address})
            )
    log.info("%d of %d records need puffing", len(ops), len(accounts))
    return ops
