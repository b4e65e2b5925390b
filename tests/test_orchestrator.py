import pytest

import bulkmint.constants as C
import bulkmint.programs as P
from bulkmint.cli import build_ops, ledger_flow, parse_args
from bulkmint.flows import FLOWS, airdrop_ops, puff_ops, refund_ops, select_range, update_ops
from bulkmint.layouts import Record, RecordData
from bulkmint.progress import ProgressLedger
from bulkmint.reconcile import reconcile
from bulkmint.retry import CappedAttempts, FixedDelay, RetryController

from fakes import FakeNetwork, ProcessKilled, address

DESTINATIONS = [address(f"wallet-{i}") for i in range(10)]


def refund_rows():
    return [{"pubkey": d, "amount": 1_000 + i} for i, d in enumerate(DESTINATIONS)]


async def test_airdrop_scenario(network, ledger, make_orchestrator, master_mint):
    a, b = address("A"), address("B")
    ops = airdrop_ops([[a, 3], [b, 1]], master_mint)

    report = await make_orchestrator(ledger).run(FLOWS["airdrop"], ops, ledger_flow="airdrop")

    assert len(ops) == 2
    assert report.units == 4
    assert len(network.sent) == 4
    assert await ledger.processed("airdrop") == {a: 3, b: 1}
    editions = [s["edition"] for s in await ledger.submissions("airdrop")]
    assert sorted(editions) == [1, 2, 3, 4]
    assert len(set(editions)) == 4


async def test_airdrop_resumes_from_processed_count(network, ledger, make_orchestrator, master_mint):
    a = address("A")
    await ledger.record("airdrop", a, C.OpStatus.IN_FLIGHT, processed=2)

    report = await make_orchestrator(ledger).run(FLOWS["airdrop"], airdrop_ops([[a, 5]], master_mint), ledger_flow="airdrop")

    assert report.units == 3
    assert await ledger.processed("airdrop") == {a: 5}


async def test_editions_keep_increasing_across_runs(network, ledger_path, make_orchestrator, master_mint):
    first = ProgressLedger(ledger_path)
    await make_orchestrator(first).run(FLOWS["airdrop"], airdrop_ops([[address("A"), 2]], master_mint), ledger_flow="drop")

    second = ProgressLedger(ledger_path)
    await make_orchestrator(second).run(FLOWS["airdrop"], airdrop_ops([[address("B"), 2]], master_mint), ledger_flow="drop")

    editions = {s["key"]: [] for s in await second.submissions("drop")}
    for s in await second.submissions("drop"):
        editions[s["key"]].append(s["edition"])
    assert editions[address("A")] == [1, 2]
    assert editions[address("B")] == [3, 4]


async def test_fire_and_forget_failure_still_advances(network, ledger, make_orchestrator, master_mint):
    a = address("A")
    network.reject_next = 1

    report = await make_orchestrator(ledger).run(FLOWS["airdrop"], airdrop_ops([[a, 3]], master_mint), ledger_flow="airdrop")

    assert report.units == 2
    assert await ledger.processed("airdrop") == {a: 3}
    dropped = await ledger.submissions("airdrop", C.UnitState.DROPPED)
    assert [s["unit"] for s in dropped] == [0]


async def test_interrupted_run_resumes_without_duplicates(ledger_path, make_orchestrator, tmp_path, forever):
    ops = refund_ops(refund_rows())
    first_net = FakeNetwork()
    first_net.crash_on_submit = 7
    first = ProgressLedger(ledger_path)

    with pytest.raises(RuntimeError):
        await make_orchestrator(first, first_net).run(FLOWS["refunds"], ops, controller=forever)
    previous = tmp_path / "previous.json"
    await first.export_json("refunds", previous)
    assert await first.load("refunds") == set(DESTINATIONS[:6])

    second_net = FakeNetwork()
    second = ProgressLedger(tmp_path / "second.db")
    await second.import_previous("refunds", previous)
    report = await make_orchestrator(second, second_net).run(FLOWS["refunds"], refund_ops(refund_rows()), controller=forever)

    assert second_net.destinations() == DESTINATIONS[6:]
    assert report.already_done == 6
    assert await second.load("refunds") == set(DESTINATIONS)


async def test_idempotent_resume(ledger_path, make_orchestrator, tmp_path, forever):
    first_net = FakeNetwork()
    first = ProgressLedger(ledger_path)
    await make_orchestrator(first, first_net).run(
        FLOWS["refunds"], select_range(refund_ops(refund_rows()), 0, 4), controller=forever
    )
    before = await first.load("refunds")

    second_net = FakeNetwork()
    await make_orchestrator(first, second_net).run(FLOWS["refunds"], refund_ops(refund_rows()), controller=forever)
    after = await first.load("refunds")

    newly = after - before
    assert newly.isdisjoint(before)
    assert set(second_net.destinations()) == newly
    assert after == set(DESTINATIONS)


async def test_partition_completeness(tmp_path, make_orchestrator, forever):
    async def run(name, start, end):
        ledger = ProgressLedger(tmp_path / f"{name}.db")
        ops = select_range(refund_ops(refund_rows()), start, end)
        await make_orchestrator(ledger, FakeNetwork()).run(FLOWS["refunds"], ops, controller=forever)
        return await ledger.load("refunds")

    left, right = await run("left", 0, 4), await run("right", 4, None)
    whole = await run("whole", 0, 10)

    assert left.isdisjoint(right)
    assert left | right == whole == set(DESTINATIONS)


async def test_confirmed_flow_retries_with_fresh_checkpoints(network, ledger, make_orchestrator, forever, sleep):
    network.reject_next = 3
    ops = select_range(refund_ops(refund_rows()), 0, 1)

    report = await make_orchestrator(ledger).run(FLOWS["refunds"], ops, controller=forever)

    assert report.completed == 1
    assert sleep.calls == [1.0, 1.0, 1.0]
    assert len(network.checkpoints) == 4
    assert len({c.token for c in network.checkpoints}) == 4


async def test_capped_policy_marks_row_failed_and_continues(network, ledger, make_orchestrator, sleep):
    network.reject_next = 2
    ops = select_range(refund_ops(refund_rows()), 0, 2)
    controller = RetryController(CappedAttempts(FixedDelay(0.1), max_attempts=2), sleep=sleep)

    report = await make_orchestrator(ledger).run(FLOWS["refunds"], ops, controller=controller)

    assert (report.failed, report.completed) == (1, 1)
    assert await ledger.status("refunds", DESTINATIONS[0]) is C.OpStatus.FAILED
    assert await ledger.load("refunds") == {DESTINATIONS[1]}


async def test_undecodable_record_is_skipped(network, ledger, make_orchestrator, operator, forever):
    good_mint = address("good-mint")
    good = P.record_address(good_mint)
    network.accounts[good] = Record(
        update_authority=operator.address,
        mint=good_mint,
        data=RecordData(name="n", symbol="s", uri="https://old", seller_fee_basis_points=0),
        primary_sale_happened=False,
        is_mutable=True,
    ).encode()
    bad = address("bad-record")
    network.accounts[bad] = b"\x09garbage"

    ops = update_ops([[bad, "https://new-bad"], [good, "https://new-good"]])
    report = await make_orchestrator(ledger).run(FLOWS["update-records"], ops, controller=forever)

    assert (report.skipped, report.completed) == (1, 1)
    assert await ledger.status("update-records", bad) is C.OpStatus.SKIPPED
    assert await ledger.load("update-records") == {good}


def seed_unpuffed_records(network, operator, n):
    for i in range(n):
        mint = address(f"puff-mint-{i}")
        record = Record(
            update_authority=operator.address,
            mint=mint,
            data=RecordData(name=f"n{i}", symbol="S", uri="https://u", seller_fee_basis_points=0),
            primary_sale_happened=False,
            is_mutable=True,
        )
        network.program_accounts[C.METADATA_PROGRAM_ID].append((P.record_address(mint), record.encode()))


async def test_puff_packs_many_records_per_batch(network, ledger, make_orchestrator, operator, forever):
    seed_unpuffed_records(network, operator, 25)
    network.program_accounts[C.METADATA_PROGRAM_ID].append((address("junk"), b"\x04\x00"))

    ops = await puff_ops(network)
    report = await make_orchestrator(ledger).run(FLOWS["puff"], ops, controller=forever)

    assert len(ops) == 25
    assert len(network.sent) == 2
    assert report.completed == 25
    assert len(await ledger.load("puff")) == 25


async def test_crash_after_confirmation_does_not_repeat_the_transfer(network, ledger_path, make_orchestrator, forever):
    ops = select_range(refund_ops(refund_rows()), 0, 3)
    network.crash_after_confirm = 2

    with pytest.raises(ProcessKilled):
        await make_orchestrator(ProgressLedger(ledger_path)).run(FLOWS["refunds"], ops, controller=forever)
    assert network.destinations() == DESTINATIONS[:2]

    network.crash_after_confirm = None
    resumed = ProgressLedger(ledger_path)
    report = await make_orchestrator(resumed).run(
        FLOWS["refunds"], select_range(refund_ops(refund_rows()), 0, 3), controller=forever
    )

    assert network.destinations() == DESTINATIONS[:3]
    assert (report.already_done, report.completed, report.units) == (1, 2, 1)
    assert await resumed.load("refunds") == set(DESTINATIONS[:3])
    assert not await resumed.submissions("refunds", C.UnitState.PENDING)


async def test_resume_waits_for_an_attempt_still_in_flight(network, ledger, make_orchestrator, sleep):
    [op] = select_range(refund_ops(refund_rows()), 0, 1)
    await ledger.record_submission("refunds", op.key, 0, "sig-in-flight", C.UnitState.PENDING, last_valid_height=1_010)

    async def advance(seconds):
        sleep.calls.append(seconds)
        network.height += 10
        if len(sleep.calls) == 1:
            network.statuses["sig-in-flight"] = "confirmed"

    controller = RetryController(FixedDelay(1.0), sleep=advance)
    report = await make_orchestrator(ledger).run(FLOWS["refunds"], [op], controller=controller)

    assert network.sent == []
    assert sleep.calls == [C.POLL_INTERVAL]
    assert report.completed == 1
    assert [s["state"] for s in await ledger.submissions("refunds")] == [C.UnitState.CONFIRMED]


async def test_expired_attempt_is_replaced_and_retired(network, ledger, make_orchestrator, forever):
    [op] = select_range(refund_ops(refund_rows()), 0, 1)
    await ledger.record_submission("refunds", op.key, 0, "sig-lost", C.UnitState.PENDING, last_valid_height=900)

    await make_orchestrator(ledger).run(FLOWS["refunds"], [op], controller=forever)

    assert network.destinations() == [op.key]
    states = {s["signature"]: s["state"] for s in await ledger.submissions("refunds")}
    assert states.pop("sig-lost") == C.UnitState.SUPERSEDED
    assert list(states.values()) == [C.UnitState.CONFIRMED]


async def test_grouped_batch_that_landed_before_a_crash_is_not_resent(
    network, ledger_path, make_orchestrator, operator, forever
):
    seed_unpuffed_records(network, operator, 25)
    network.crash_after_confirm = 1

    with pytest.raises(ProcessKilled):
        await make_orchestrator(ProgressLedger(ledger_path)).run(FLOWS["puff"], await puff_ops(network), controller=forever)

    network.crash_after_confirm = None
    resumed = ProgressLedger(ledger_path)
    report = await make_orchestrator(resumed).run(FLOWS["puff"], await puff_ops(network), controller=forever)

    assert len(network.sent) == 2
    assert report.completed == 25
    assert report.units == 5
    assert len(await resumed.load("puff")) == 25


async def test_skipped_airdrop_units_leave_placeholders(network, ledger, make_orchestrator, master_mint):
    a = address("A")
    network.accounts[P.edition_address(master_mint)] = b"\x09garbage"

    report = await make_orchestrator(ledger).run(FLOWS["airdrop"], airdrop_ops([[a, 3]], master_mint), ledger_flow="airdrop")

    assert network.sent == []
    assert report.units == 0
    assert await ledger.processed("airdrop") == {a: 3}
    assert [s["unit"] for s in await ledger.submissions("airdrop", C.UnitState.DROPPED)] == [0, 1, 2]

    reconciled = await reconcile(network, ledger, "airdrop")
    assert reconciled.dropped == 3
    assert reconciled.reopened == {a: 0}
    assert await ledger.processed("airdrop") == {a: 0}


async def test_counted_resume_counts_journalled_attempts(network, ledger, make_orchestrator, master_mint):
    a = address("A")
    # a run that sent unit 0 and stopped before its counter moved
    await ledger.advance_counter(f"edition:{master_mint}", 1)
    await ledger.record_submission("airdrop", a, 0, "sig-sent", C.UnitState.PENDING, last_valid_height=1_150, edition=1)

    report = await make_orchestrator(ledger).run(FLOWS["airdrop"], airdrop_ops([[a, 3]], master_mint), ledger_flow="airdrop")

    assert report.units == 2
    assert await ledger.processed("airdrop") == {a: 3}
    assert [s["unit"] for s in await ledger.submissions("airdrop")] == [0, 1, 2]


async def test_single_mint_edition_runs_are_independent(network, ledger, make_orchestrator, master_mint, forever):
    argv = ["mint-edition", "--master-mint", master_mint, "--recipient", address("fan")]

    for _ in range(2):
        args = parse_args(argv)
        ops = await build_ops(args, network=None)
        report = await make_orchestrator(ledger).run(
            FLOWS["mint-edition"], ops, ledger_flow=ledger_flow(args), controller=forever
        )
        assert (report.completed, report.already_done) == (1, 0)

    assert len(network.sent) == 2
    editions = sorted(s["edition"] for s in await ledger.submissions(f"mint-edition:{master_mint}") if s["edition"])
    assert editions == [1, 2]


async def test_mint_edition_run_id_resumes_the_same_invocation(network, ledger, make_orchestrator, master_mint, forever):
    argv = ["mint-edition", "--master-mint", master_mint, "--recipient", address("fan"), "--run-id", "abc"]

    for _ in range(2):
        args = parse_args(argv)
        await make_orchestrator(ledger).run(
            FLOWS["mint-edition"], await build_ops(args, network=None), ledger_flow=ledger_flow(args), controller=forever
        )

    assert len(network.sent) == 1
    assert await ledger.load(f"mint-edition:{master_mint}") == {f"{address('fan')}:abc"}
