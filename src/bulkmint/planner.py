"""Expands LogicalOperations into InstructionSets.

Each kind has one async planner registered in ``_PLANNERS``. A planner reads
whatever on-ledger state it needs, allocates fresh keypairs through the signer
registry, and declares exactly the signers its instructions require.
"""

import logging
from collections.abc import Callable, Awaitable
from typing import Any

import bulkmint.constants as C
import bulkmint.programs as P
from bulkmint.errors import (
    ConfigurationError,
    MissingSignerError,
    NotUpdatable,
    PlanningError,
    StateDecodeError,
    TransientNetworkError,
)
from bulkmint.layouts import Creator, MasterEdition, Record, RecordData, TokenAccount
from bulkmint.models import Instruction, InstructionSet, LogicalOperation
from bulkmint.network import Network, data_size, memcmp
from bulkmint.progress import ProgressLedger
from bulkmint.signers import SignerIdentity, SignerRegistry, SigningContext, short

log = logging.getLogger("bulkmint.planner")


def declare_signers(op_key: str, instructions: list[Instruction], *candidates: SignerIdentity) -> tuple[SignerIdentity, ...]:
    """Map every address an instruction needs as signer onto a candidate identity."""
    by_address: dict[str, SignerIdentity] = {}
    for c in candidates:
        by_address.setdefault(c.address, c)
    declared: dict[str, SignerIdentity] = {}
    for ix in instructions:
        for address in ix.signer_addresses:
            identity = by_address.get(address)
            if identity is None:
                raise MissingSignerError(f"{op_key}: no key available for signer {short(address)}", key=op_key)
            declared.setdefault(address, identity)
    return tuple(declared.values())


def parse_creators(raw: list[dict] | None) -> tuple[Creator, ...] | None:
    if not raw:
        return None
    creators = tuple(
        Creator(address=c["address"], verified=bool(c.get("verified", False)), share=int(c["share"])) for c in raw
    )
    if sum(c.share for c in creators) != 100:
        raise ConfigurationError(f"Creator shares must add up to 100, got {sum(c.share for c in creators)}")
    return creators


class OperationPlanner:
    def __init__(
        self,
        network: Network,
        signing: SigningContext,
        registry: SignerRegistry,
        ledger: ProgressLedger,
        *,
        program_id: str = C.METADATA_PROGRAM_ID,
    ) -> None:
        self.network = network
        self.signing = signing
        self.registry = registry
        self.ledger = ledger
        self.program_id = program_id
        self._rent: dict[int, int] = {}
        self._next_edition: dict[str, int] = {}
        self._sources: dict[tuple[str, str], str] = {}

    async def plan(self, op: LogicalOperation, unit: int = 0) -> InstructionSet:
        planner = _PLANNERS.get(op.kind)
        if planner is None:
            raise ConfigurationError(f"Unsupported operation kind: {op.kind}")
        try:
            return await planner(self, op, unit)
        except TransientNetworkError as e:
            raise PlanningError(f"{op.key}: required read failed: {e}", key=op.key) from e
        except KeyError as e:
            raise ConfigurationError(f"{op.key}: missing required field {e}", key=op.key) from e

    # ---- shared reads --------------------------------------------------------

    async def rent(self, size: int) -> int:
        if size not in self._rent:
            self._rent[size] = await self.network.minimum_balance_for_rent_exemption(size)
        return self._rent[size]

    async def read_record(self, address: str) -> Record:
        return Record.decode(await self.network.fetch_account_state(address))

    async def source_holding(self, mint: str, owner: str) -> str:
        """First token account of ``owner`` for ``mint`` holding a nonzero balance."""
        cache_key = (mint, owner)
        if cache_key in self._sources:
            return self._sources[cache_key]
        accounts = await self.network.fetch_program_accounts(
            C.TOKEN_PROGRAM_ID,
            [data_size(C.TOKEN_ACCOUNT_LEN), memcmp(0, mint), memcmp(32, owner)],
        )
        for address, raw in accounts:
            try:
                token = TokenAccount.decode(raw)
            except StateDecodeError as e:
                log.warning("Ignoring undecodable token account %s: %s", address, e)
                continue
            if token.mint == mint and token.owner == owner and token.amount > 0:
                self._sources[cache_key] = address
                return address
        raise ConfigurationError(f"{short(owner)} holds no token account with a balance of {short(mint)}")

    async def next_edition(self, master_mint: str) -> int:
        """Next edition number for ``master_mint``; persisted before it is returned."""
        name = f"edition:{master_mint}"
        edition_account = P.edition_address(master_mint, self.program_id)
        master = MasterEdition.decode(await self.network.fetch_account_state(edition_account))
        if master_mint not in self._next_edition:
            recorded = await self.ledger.counter(name)
            self._next_edition[master_mint] = max(master.supply, recorded) + 1
        edition = self._next_edition[master_mint]
        if master.max_supply is not None and edition > master.max_supply:
            raise ConfigurationError(f"Master edition {short(master_mint)} is exhausted (max supply {master.max_supply})")
        await self.ledger.advance_counter(name, edition)
        self._next_edition[master_mint] = edition + 1
        return edition

    # ---- instruction fragments -----------------------------------------------

    async def new_mint(self, mint: str, authority: str) -> list[Instruction]:
        payer = self.signing.payer.address
        return [
            P.create_account(payer, mint, await self.rent(C.MINT_LEN), C.MINT_LEN, C.TOKEN_PROGRAM_ID),
            P.initialize_mint(mint, 0, authority, authority),
        ]

    async def new_holding(self, holding: str, mint: str, owner: str) -> list[Instruction]:
        payer = self.signing.payer.address
        return [
            P.create_account(payer, holding, await self.rent(C.TOKEN_ACCOUNT_LEN), C.TOKEN_ACCOUNT_LEN, C.TOKEN_PROGRAM_ID),
            P.initialize_account(holding, mint, owner),
        ]


async def _plan_create_record(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    p, ctx = op.params, pl.signing
    data = RecordData(
        name=p["name"],
        symbol=p.get("symbol", ""),
        uri=p["uri"],
        seller_fee_basis_points=int(p.get("seller_fee_basis_points", 0)),
        creators=parse_creators(p.get("creators")),
    )
    instructions: list[Instruction] = []
    ephemeral: list[SignerIdentity] = []
    creates: set[str] = set()
    reads: set[str] = set()

    if p.get("mint"):
        mint = p["mint"]
        reads.add(mint)
    else:
        mint_key = pl.registry.ephemeral()
        ephemeral.append(mint_key)
        mint = mint_key.address
        instructions += await pl.new_mint(mint, ctx.mint_authority.address)
        creates.add(mint)

    outputs: dict[str, Any] = {"mint": mint}
    if p.get("mint_one", bool(p.get("recipient"))):
        holding_key = pl.registry.ephemeral()
        ephemeral.append(holding_key)
        owner = p.get("recipient") or ctx.payer.address
        instructions += await pl.new_holding(holding_key.address, mint, owner)
        instructions.append(P.mint_to(mint, holding_key.address, ctx.mint_authority.address, 1))
        creates.add(holding_key.address)
        outputs["holding"] = holding_key.address

    record = P.record_address(mint, pl.program_id)
    instructions.append(
        P.create_record(
            record,
            mint,
            ctx.mint_authority.address,
            ctx.payer.address,
            ctx.update_authority.address,
            data,
            bool(p.get("is_mutable", True)),
            pl.program_id,
        )
    )
    creates.add(record)
    outputs["record"] = record

    if p.get("master_edition"):
        edition = P.edition_address(mint, pl.program_id)
        max_supply = p.get("max_supply")
        instructions.append(
            P.create_master_edition(
                edition,
                mint,
                ctx.update_authority.address,
                ctx.mint_authority.address,
                record,
                ctx.payer.address,
                None if max_supply is None else int(max_supply),
                pl.program_id,
            )
        )
        creates.add(edition)
        outputs["master_edition"] = edition

    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer, ctx.mint_authority, ctx.update_authority, *ephemeral),
        payer=ctx.payer,
        creates=frozenset(creates),
        reads_committed=frozenset(reads),
        outputs=outputs,
    )


async def _plan_create_master_edition(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    p, ctx = op.params, pl.signing
    mint = p["mint"]
    record = P.record_address(mint, pl.program_id)
    instructions: list[Instruction] = []
    ephemeral: list[SignerIdentity] = []
    creates: set[str] = set()
    outputs: dict[str, Any] = {"mint": mint, "record": record}

    if p.get("recipient") or p.get("mint_one"):
        holding_key = pl.registry.ephemeral()
        ephemeral.append(holding_key)
        instructions += await pl.new_holding(holding_key.address, mint, p.get("recipient") or ctx.payer.address)
        instructions.append(P.mint_to(mint, holding_key.address, ctx.mint_authority.address, 1))
        creates.add(holding_key.address)
        outputs["holding"] = holding_key.address

    edition = P.edition_address(mint, pl.program_id)
    max_supply = p.get("max_supply")
    instructions.append(
        P.create_master_edition(
            edition,
            mint,
            ctx.update_authority.address,
            ctx.mint_authority.address,
            record,
            ctx.payer.address,
            None if max_supply is None else int(max_supply),
            pl.program_id,
        )
    )
    creates.add(edition)
    outputs["master_edition"] = edition
    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer, ctx.mint_authority, ctx.update_authority, *ephemeral),
        payer=ctx.payer,
        creates=frozenset(creates),
        reads_committed=frozenset({mint, record}),
        outputs=outputs,
    )


async def _plan_mint_edition(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    p, ctx = op.params, pl.signing
    master_mint = p["master_mint"]
    recipient = p.get("recipient") or op.key
    source = await pl.source_holding(master_mint, ctx.account_authority.address)

    mint_key = pl.registry.ephemeral()
    holding_key = pl.registry.ephemeral()
    new_mint, holding = mint_key.address, holding_key.address
    payer, authority = ctx.payer.address, ctx.account_authority.address

    # Mint authority of the new edition is the account authority
    instructions = await pl.new_mint(new_mint, authority)
    instructions += await pl.new_holding(holding, new_mint, recipient)
    instructions.append(P.mint_to(new_mint, holding, authority, 1))

    # Numbered last so a failed read above does not burn an edition
    edition = await pl.next_edition(master_mint)
    new_record = P.record_address(new_mint, pl.program_id)
    new_edition = P.edition_address(new_mint, pl.program_id)
    master_edition = P.edition_address(master_mint, pl.program_id)
    instructions.append(
        P.mint_new_edition_via_token(
            new_record=new_record,
            new_edition=new_edition,
            master_edition=master_edition,
            new_mint=new_mint,
            new_mint_authority=authority,
            payer=payer,
            token_account_owner=authority,
            token_account=source,
            new_record_update_authority=ctx.update_authority.address,
            record=P.record_address(master_mint, pl.program_id),
            master_mint=master_mint,
            edition=edition,
            program_id=pl.program_id,
        )
    )
    log.debug("%s unit %d gets edition %d", op.key, unit, edition)
    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer, ctx.account_authority, mint_key, holding_key),
        payer=ctx.payer,
        creates=frozenset({new_mint, holding, new_record, new_edition}),
        reads_committed=frozenset({master_mint, master_edition, source}),
        outputs={"mint": new_mint, "holding": holding, "record": new_record, "edition": edition},
    )


async def _plan_mint_tokens(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    p, ctx = op.params, pl.signing
    mint, amount = p["mint"], int(p["amount"])
    if amount <= 0:
        raise ConfigurationError(f"{op.key}: amount must be positive", key=op.key)
    instructions: list[Instruction] = []
    ephemeral: list[SignerIdentity] = []
    creates: set[str] = set()

    destination = p.get("destination")
    if not destination:
        holding_key = pl.registry.ephemeral()
        ephemeral.append(holding_key)
        destination = holding_key.address
        instructions += await pl.new_holding(destination, mint, p.get("recipient") or ctx.payer.address)
        creates.add(destination)
    instructions.append(P.mint_to(mint, destination, ctx.mint_authority.address, amount))
    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer, ctx.mint_authority, *ephemeral),
        payer=ctx.payer,
        creates=frozenset(creates),
        reads_committed=frozenset({mint}),
        outputs={"mint": mint, "destination": destination, "amount": amount},
    )


async def _plan_update_record(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    p, ctx = op.params, pl.signing
    address = p.get("record") or op.key
    current = await pl.read_record(address)
    if not current.is_mutable:
        raise NotUpdatable(f"{address} is immutable", key=op.key)
    if current.update_authority != ctx.update_authority.address:
        raise NotUpdatable(
            f"{address} is owned by {short(current.update_authority)}, not {short(ctx.update_authority.address)}",
            key=op.key,
        )

    fields = {k: p.get(k) for k in ("name", "symbol", "uri", "seller_fee_basis_points")}
    data = current.data.with_updates(**fields) if any(v is not None for v in fields.values()) else None
    primary_sale = p.get("primary_sale_happened")
    instructions = [
        P.update_record(
            address,
            ctx.update_authority.address,
            data=data,
            new_update_authority=p.get("new_update_authority"),
            primary_sale_happened=None if primary_sale is None else bool(primary_sale),
            program_id=pl.program_id,
        )
    ]
    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer, ctx.update_authority),
        payer=ctx.payer,
        reads_committed=frozenset({address}),
        outputs={"record": address},
    )


async def _plan_transfer(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    ctx = pl.signing
    destination = op.params.get("destination") or op.key
    amount = int(op.params["amount"])
    if amount <= 0:
        raise ConfigurationError(f"{op.key}: amount must be positive", key=op.key)
    instructions = [P.transfer(ctx.payer.address, destination, amount)]
    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer),
        payer=ctx.payer,
        outputs={"destination": destination, "amount": amount},
    )


async def _plan_puff_record(pl: OperationPlanner, op: LogicalOperation, unit: int) -> InstructionSet:
    ctx = pl.signing
    address = op.params.get("record") or op.key
    instructions = [P.puff_record(address, pl.program_id)]
    return InstructionSet(
        op_key=op.key,
        unit=unit,
        instructions=tuple(instructions),
        signers=declare_signers(op.key, instructions, ctx.payer),
        payer=ctx.payer,
        reads_committed=frozenset({address}),
        outputs={"record": address},
    )


_PLANNERS: dict[C.OpKind, Callable[[OperationPlanner, LogicalOperation, int], Awaitable[InstructionSet]]] = {
    C.OpKind.CREATE_RECORD: _plan_create_record,
    C.OpKind.CREATE_MASTER_EDITION: _plan_create_master_edition,
    C.OpKind.MINT_EDITION: _plan_mint_edition,
    C.OpKind.MINT_TOKENS: _plan_mint_tokens,
    C.OpKind.UPDATE_RECORD: _plan_update_record,
    C.OpKind.TRANSFER: _plan_transfer,
    C.OpKind.PUFF_RECORD: _plan_puff_record,
}
