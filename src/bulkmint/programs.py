"""Instruction builders for the system, token and record programs.

These are opaque to the orchestrator: each returns an ``Instruction`` whose account
metas already carry the signer/writable flags the program expects. Derived addresses
follow the record program's seed convention.
"""

import struct

from solders.pubkey import Pubkey

import bulkmint.constants as C
from bulkmint.layouts import RecordData, Writer, pubkey_bytes, pubkey_of
from bulkmint.models import AccountMeta, Instruction


class MetadataInstruction:
    CREATE_METADATA_ACCOUNT = 0
    UPDATE_METADATA_ACCOUNT = 1
    CREATE_MASTER_EDITION = 10
    MINT_NEW_EDITION_FROM_MASTER_EDITION_VIA_TOKEN = 11
    PUFF_METADATA = 14


def find_program_address(seeds: list[bytes], program_id: str) -> tuple[str, int]:
    address, bump = Pubkey.find_program_address(seeds, pubkey_of(program_id))
    return str(address), bump


def record_address(mint: str, program_id: str = C.METADATA_PROGRAM_ID) -> str:
    seeds = [C.PREFIX, pubkey_bytes(program_id), pubkey_bytes(mint)]
    return find_program_address(seeds, program_id)[0]


def edition_address(mint: str, program_id: str = C.METADATA_PROGRAM_ID) -> str:
    seeds = [C.PREFIX, pubkey_bytes(program_id), pubkey_bytes(mint), C.EDITION]
    return find_program_address(seeds, program_id)[0]


def edition_marker_address(mint: str, edition: int, program_id: str = C.METADATA_PROGRAM_ID) -> str:
    marker = str(edition // C.EDITION_MARKER_BIT_SIZE).encode()
    seeds = [C.PREFIX, pubkey_bytes(program_id), pubkey_bytes(mint), C.EDITION, marker]
    return find_program_address(seeds, program_id)[0]


def _rw(pubkey: str, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=signer, is_writable=True)


def _ro(pubkey: str, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=signer, is_writable=False)


# ---- System program ----------------------------------------------------------

def create_account(payer: str, new_account: str, lamports: int, space: int, owner: str) -> Instruction:
    data = struct.pack("<IQQ", 0, lamports, space) + pubkey_bytes(owner)
    return Instruction(
        program_id=C.SYSTEM_PROGRAM_ID,
        accounts=(_rw(payer, True), _rw(new_account, True)),
        data=data,
        label="system.create_account",
    )


def transfer(source: str, destination: str, lamports: int) -> Instruction:
    return Instruction(
        program_id=C.SYSTEM_PROGRAM_ID,
        accounts=(_rw(source, True), _rw(destination)),
        data=struct.pack("<IQ", 2, lamports),
        label="system.transfer",
    )


# ---- Token program -----------------------------------------------------------

def initialize_mint(mint: str, decimals: int, mint_authority: str, freeze_authority: str | None = None) -> Instruction:
    w = Writer().u8(0).u8(decimals).pubkey(mint_authority)
    # freeze authority is a fixed-width COption
    if freeze_authority is None:
        w.u8(0).raw(bytes(32))
    else:
        w.u8(1).pubkey(freeze_authority)
    return Instruction(
        program_id=C.TOKEN_PROGRAM_ID,
        accounts=(_rw(mint), _ro(C.RENT_SYSVAR_ID)),
        data=w.bytes(),
        label="token.initialize_mint",
    )


def initialize_account(account: str, mint: str, owner: str) -> Instruction:
    return Instruction(
        program_id=C.TOKEN_PROGRAM_ID,
        accounts=(_rw(account), _ro(mint), _ro(owner), _ro(C.RENT_SYSVAR_ID)),
        data=bytes([1]),
        label="token.initialize_account",
    )


def mint_to(mint: str, destination: str, authority: str, amount: int) -> Instruction:
    return Instruction(
        program_id=C.TOKEN_PROGRAM_ID,
        accounts=(_rw(mint), _rw(destination), _ro(authority, True)),
        data=struct.pack("<BQ", 7, amount),
        label="token.mint_to",
    )


# ---- Record program ----------------------------------------------------------

def create_record(
    record: str,
    mint: str,
    mint_authority: str,
    payer: str,
    update_authority: str,
    data: RecordData,
    is_mutable: bool,
    program_id: str = C.METADATA_PROGRAM_ID,
) -> Instruction:
    w = Writer().u8(MetadataInstruction.CREATE_METADATA_ACCOUNT)
    data.encode(w)
    w.bool(is_mutable)
    return Instruction(
        program_id=program_id,
        accounts=(
            _rw(record),
            _ro(mint),
            _ro(mint_authority, True),
            _rw(payer, True),
            _ro(update_authority, update_authority != payer),
            _ro(C.SYSTEM_PROGRAM_ID),
            _ro(C.RENT_SYSVAR_ID),
        ),
        data=w.bytes(),
        label="record.create",
    )


def update_record(
    record: str,
    update_authority: str,
    data: RecordData | None = None,
    new_update_authority: str | None = None,
    primary_sale_happened: bool | None = None,
    program_id: str = C.METADATA_PROGRAM_ID,
) -> Instruction:
    w = Writer().u8(MetadataInstruction.UPDATE_METADATA_ACCOUNT)
    w.option(data, lambda d: d.encode(w))
    w.option(new_update_authority, w.pubkey)
    # Option<bool> for the primary-sale flag
    w.option(primary_sale_happened, w.bool)
    return Instruction(
        program_id=program_id,
        accounts=(_rw(record), _ro(update_authority, True)),
        data=w.bytes(),
        label="record.update",
    )


def create_master_edition(
    edition: str,
    mint: str,
    update_authority: str,
    mint_authority: str,
    record: str,
    payer: str,
    max_supply: int | None,
    program_id: str = C.METADATA_PROGRAM_ID,
) -> Instruction:
    w = Writer().u8(MetadataInstruction.CREATE_MASTER_EDITION)
    w.option(max_supply, w.u64)
    return Instruction(
        program_id=program_id,
        accounts=(
            _rw(edition),
            _rw(mint),
            _ro(update_authority, True),
            _ro(mint_authority, True),
            _rw(payer, True),
            _ro(record),
            _ro(C.TOKEN_PROGRAM_ID),
            _ro(C.SYSTEM_PROGRAM_ID),
            _ro(C.RENT_SYSVAR_ID),
        ),
        data=w.bytes(),
        label="record.create_master_edition",
    )


def mint_new_edition_via_token(
    new_record: str,
    new_edition: str,
    master_edition: str,
    new_mint: str,
    new_mint_authority: str,
    payer: str,
    token_account_owner: str,
    token_account: str,
    new_record_update_authority: str,
    record: str,
    master_mint: str,
    edition: int,
    program_id: str = C.METADATA_PROGRAM_ID,
) -> Instruction:
    marker = edition_marker_address(master_mint, edition, program_id)
    data = struct.pack("<BQ", MetadataInstruction.MINT_NEW_EDITION_FROM_MASTER_EDITION_VIA_TOKEN, edition)
    return Instruction(
        program_id=program_id,
        accounts=(
            _rw(new_record),
            _rw(new_edition),
            _rw(master_edition),
            _rw(new_mint),
            _rw(marker),
            _ro(new_mint_authority, True),
            _rw(payer, True),
            _ro(token_account_owner, True),
            _ro(token_account),
            _ro(new_record_update_authority),
            _ro(record),
            _ro(C.TOKEN_PROGRAM_ID),
            _ro(C.SYSTEM_PROGRAM_ID),
            _ro(C.RENT_SYSVAR_ID),
        ),
        data=data,
        label="record.mint_new_edition",
    )


def puff_record(record: str, program_id: str = C.METADATA_PROGRAM_ID) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(_rw(record),),
        data=bytes([MetadataInstruction.PUFF_METADATA]),
        label="record.puff",
    )
