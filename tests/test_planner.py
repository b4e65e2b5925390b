import pytest

import bulkmint.constants as C
import bulkmint.programs as P
from bulkmint.errors import ConfigurationError, NotUpdatable, PlanningError, StateDecodeError
from bulkmint.layouts import Creator, Record, RecordData, TokenAccount, Writer
from bulkmint.models import LogicalOperation
from bulkmint.planner import OperationPlanner
from bulkmint.signers import SignerIdentity, SignerRegistry, SigningContext

from fakes import address


def op(kind, key="row", **params):
    return LogicalOperation(index=0, kind=kind, key=key, params=params)


def addresses(instruction_set):
    return {s.address for s in instruction_set.signers}


def required(instruction_set):
    return {a for ix in instruction_set.instructions for a in ix.signer_addresses}


@pytest.fixture
def split_context():
    return SigningContext(
        payer=SignerIdentity.generate(C.SignerRole.PAYER),
        update_authority=SignerIdentity.generate(C.SignerRole.UPDATE_AUTHORITY),
        mint_authority=SignerIdentity.generate(C.SignerRole.MINT_AUTHORITY),
        account_authority=SignerIdentity.generate(C.SignerRole.ACCOUNT_AUTHORITY),
    )


@pytest.fixture
def split_planner(network, split_context, ledger):
    return OperationPlanner(network, split_context, SignerRegistry(split_context), ledger)


def stored_record(network, update_authority, *, mutable=True):
    record = Record(
        update_authority=update_authority,
        mint=address("record-mint"),
        data=RecordData(
            name="Ticket #1",
            symbol="TIX",
            uri="https://example.com/1.json",
            seller_fee_basis_points=500,
            creators=(Creator(address("creator-a"), True, 60), Creator(address("creator-b"), False, 40)),
        ),
        primary_sale_happened=False,
        is_mutable=mutable,
        edition_nonce=254,
    )
    addr = P.record_address(record.mint)
    network.accounts[addr] = record.encode()
    return addr, record


async def test_create_record_declares_exact_signers(split_planner, split_context):
    ctx = split_context
    s = await split_planner.plan(op(C.OpKind.CREATE_RECORD, name="A", uri="https://a"))

    mint = s.outputs["mint"]
    assert [ix.label for ix in s.instructions] == [
        "system.create_account",
        "token.initialize_mint",
        "record.create",
    ]
    assert addresses(s) == {ctx.payer.address, mint, ctx.mint_authority.address, ctx.update_authority.address}
    assert addresses(s) == required(s)
    assert s.outputs["record"] == P.record_address(mint)
    assert mint in s.creates


async def test_create_record_update_authority_signs_only_when_distinct(planner, operator):
    s = await planner.plan(op(C.OpKind.CREATE_RECORD, name="A", uri="https://a", recipient=address("owner")))

    assert addresses(s) == {operator.address, s.outputs["mint"], s.outputs["holding"]}
    assert [ix.label for ix in s.instructions][-2:] == ["token.mint_to", "record.create"]


async def test_create_record_with_master_edition(planner):
    s = await planner.plan(
        op(C.OpKind.CREATE_RECORD, name="A", uri="https://a", master_edition=True, max_supply=10)
    )
    assert s.instructions[-1].label == "record.create_master_edition"
    assert s.outputs["master_edition"] == P.edition_address(s.outputs["mint"])


async def test_create_record_rejects_bad_creator_shares(planner):
    creators = [{"address": address("c"), "share": 50}]
    with pytest.raises(ConfigurationError):
        await planner.plan(op(C.OpKind.CREATE_RECORD, name="A", uri="https://a", creators=creators))


async def test_missing_required_field_is_fatal(planner):
    with pytest.raises(ConfigurationError):
        await planner.plan(op(C.OpKind.CREATE_RECORD, uri="https://a"))


async def test_transfer_needs_only_the_payer(planner, operator):
    dest = address("refund")
    s = await planner.plan(op(C.OpKind.TRANSFER, key=dest, destination=dest, amount=5_000))

    assert len(s) == 1
    assert addresses(s) == {operator.address}
    assert not s.creates


async def test_partial_update_keeps_other_fields_byte_identical(network, split_planner, split_context):
    addr, current = stored_record(network, split_context.update_authority.address)

    s = await split_planner.plan(op(C.OpKind.UPDATE_RECORD, key=addr, record=addr, uri="https://example.com/new.json"))

    [ix] = s.instructions
    expected = RecordData(
        name=current.data.name,
        symbol=current.data.symbol,
        uri="https://example.com/new.json",
        seller_fee_basis_points=current.data.seller_fee_basis_points,
        creators=current.data.creators,
    )
    w = Writer().u8(P.MetadataInstruction.UPDATE_METADATA_ACCOUNT).u8(1)
    expected.encode(w)
    w.u8(0).u8(0)  # no new update authority, no primary-sale change
    assert ix.data == w.bytes()
    assert addresses(s) == {split_context.update_authority.address}


async def test_update_without_data_fields_sends_no_data(network, planner, operator):
    addr, _ = stored_record(network, operator.address)

    s = await planner.plan(op(C.OpKind.UPDATE_RECORD, key=addr, record=addr, primary_sale_happened=True))

    assert s.instructions[0].data == bytes([1, 0, 0, 1, 1])


async def test_update_of_foreign_or_immutable_record_is_skippable(network, planner, operator):
    foreign, _ = stored_record(network, address("someone-else"))
    with pytest.raises(NotUpdatable):
        await planner.plan(op(C.OpKind.UPDATE_RECORD, key=foreign, record=foreign, uri="x"))

    frozen, _ = stored_record(network, operator.address, mutable=False)
    with pytest.raises(NotUpdatable):
        await planner.plan(op(C.OpKind.UPDATE_RECORD, key=frozen, record=frozen, uri="x"))


async def test_update_of_garbage_state_raises_decode_error(network, planner):
    addr = address("garbage")
    network.accounts[addr] = b"\x04\x01\x02"

    with pytest.raises(StateDecodeError):
        await planner.plan(op(C.OpKind.UPDATE_RECORD, key=addr, record=addr, uri="x"))


async def test_failed_read_surfaces_as_planning_error(network, planner, operator):
    addr, _ = stored_record(network, operator.address)
    network.fail_reads = 1

    with pytest.raises(PlanningError) as exc:
        await planner.plan(op(C.OpKind.UPDATE_RECORD, key=addr, record=addr, uri="x"))
    assert exc.value.key == addr


async def test_mint_edition_searches_for_nonzero_balance(network, split_planner, split_context):
    ctx = split_context
    master = address("master")
    network.accounts[P.edition_address(master)] = bytes([6]) + (0).to_bytes(8, "little") + b"\x00"
    empty, funded = address("empty-holding"), address("funded-holding")
    owner = ctx.account_authority.address
    network.program_accounts[C.TOKEN_PROGRAM_ID] += [
        (address("other-owner"), TokenAccount(mint=master, owner=address("x"), amount=1).encode()),
        (empty, TokenAccount(mint=master, owner=owner, amount=0).encode()),
        (funded, TokenAccount(mint=master, owner=owner, amount=1).encode()),
    ]
    recipient = address("recipient")

    s = await split_planner.plan(op(C.OpKind.MINT_EDITION, key=recipient, master_mint=master, recipient=recipient))

    ix = s.instructions[-1]
    assert ix.label == "record.mint_new_edition"
    assert ix.accounts[8].pubkey == funded
    [mint_to] = [i for i in s.instructions if i.label == "token.mint_to"]
    assert mint_to.accounts[2].pubkey == owner
    assert ix.accounts[5].pubkey == owner
    assert addresses(s) == {ctx.payer.address, s.outputs["mint"], s.outputs["holding"], owner}
    assert addresses(s) == required(s)
    assert s.outputs["edition"] == 1


async def test_edition_numbers_increase_and_persist(network, planner, ledger, master_mint, signing, registry):
    recipient = address("r")
    editions = [
        (await planner.plan(op(C.OpKind.MINT_EDITION, key=recipient, master_mint=master_mint), unit)).outputs["edition"]
        for unit in range(3)
    ]
    assert editions == [1, 2, 3]
    assert await ledger.counter(f"edition:{master_mint}") == 3

    # a new process resumes above the recorded high-water mark
    fresh = OperationPlanner(network, signing, registry, ledger)
    s = await fresh.plan(op(C.OpKind.MINT_EDITION, key=recipient, master_mint=master_mint))
    assert s.outputs["edition"] == 4


async def test_edition_counter_starts_above_onchain_supply(network, planner, master_mint):
    from bulkmint.layouts import MasterEdition

    network.accounts[P.edition_address(master_mint)] = MasterEdition(supply=41, max_supply=None).encode()

    s = await planner.plan(op(C.OpKind.MINT_EDITION, key=address("r"), master_mint=master_mint))

    assert s.outputs["edition"] == 42


async def test_mint_edition_without_source_holding_is_fatal(network, planner):
    master = address("lonely-master")
    network.accounts[P.edition_address(master)] = bytes([6]) + bytes(8) + b"\x00"

    with pytest.raises(ConfigurationError):
        await planner.plan(op(C.OpKind.MINT_EDITION, key=address("r"), master_mint=master))


async def test_puff_and_mint_tokens(planner, operator):
    record = address("short-record")
    puff = await planner.plan(op(C.OpKind.PUFF_RECORD, key=record, record=record))
    assert puff.instructions[0].data == bytes([14])
    assert addresses(puff) == set()

    mint = address("fungible")
    s = await planner.plan(op(C.OpKind.MINT_TOKENS, key="m", mint=mint, amount=500))
    assert [ix.label for ix in s.instructions] == [
        "system.create_account",
        "token.initialize_account",
        "token.mint_to",
    ]
    assert addresses(s) == {operator.address, s.outputs["destination"]}
