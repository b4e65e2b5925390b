"""The sequential orchestrator loop.

One row is planned, chunked, submitted and, in confirmed mode, fully resolved
before the next row starts. The only place a row or unit advances is the branch on
the RetryController's decision.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import bulkmint.constants as C
from bulkmint.chunker import Chunker
from bulkmint.flows import FlowPolicy
from bulkmint.models import Cursor, InstructionSet, LogicalOperation, TransactionBatch
from bulkmint.planner import OperationPlanner
from bulkmint.progress import ProgressLedger
from bulkmint.retry import Action, Decision, RetryController
from bulkmint.signers import SignerRegistry
from bulkmint.submission import CONFIRMED_STATUSES, SubmissionEngine

log = logging.getLogger("bulkmint.orchestrator")


@dataclass(slots=True)
class RunReport:
    flow: str
    total: int = 0
    completed: int = 0
    already_done: int = 0
    skipped: int = 0
    failed: int = 0
    units: int = 0
    outputs: list[dict[str, Any]] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{self.flow}: {self.completed} completed, {self.already_done} already done, "
            f"{self.skipped} skipped, {self.failed} failed of {self.total} rows ({self.units} units submitted)"
        )


class Orchestrator:
    def __init__(
        self,
        planner: OperationPlanner,
        engine: SubmissionEngine,
        ledger: ProgressLedger,
        registry: SignerRegistry,
        *,
        max_bytes: int = C.MAX_TRANSACTION_BYTES,
    ) -> None:
        self.planner = planner
        self.max_bytes = max_bytes
        self.engine = engine
        self.ledger = ledger
        self.registry = registry

    async def run(
        self,
        flow: FlowPolicy,
        ops: list[LogicalOperation],
        *,
        ledger_flow: str | None = None,
        controller: RetryController | None = None,
    ) -> RunReport:
        """Process ``ops`` in row order under ``flow``'s policy.

        ``ledger_flow`` namespaces progress (e.g. per master mint); it defaults to the flow name.
        Fatal errors propagate; everything already recorded stays recorded.
        """
        name = ledger_flow or flow.name
        controller = controller or RetryController(flow.policy)
        chunker = Chunker(max_instructions=flow.max_instructions, max_bytes=self.max_bytes)
        report = RunReport(flow=name, total=len(ops))
        log.info("Starting %s over %d rows (%s)", name, len(ops), flow.mode)

        if flow.counted:
            await self._run_counted(name, flow, ops, chunker, controller, report)
        elif flow.grouped:
            await self._run_grouped(name, flow, ops, chunker, controller, report)
        else:
            await self._run_rows(name, flow, ops, chunker, controller, report)
        log.info(report.summary())
        return report

    # ---- shared ----------------------------------------------------------------

    async def _plan_with_retry(
        self, op: LogicalOperation, unit: int, controller: RetryController
    ) -> tuple[InstructionSet | None, Decision]:
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self.planner.plan(op, unit), controller.succeeded()
            except Exception as e:
                decision = controller.failed(e, attempts, key=op.key)
            if decision.action is Action.ADVANCE:
                return None, decision
            await controller.wait(decision)

    async def _submit_with_retry(
        self,
        name: str,
        batch: TransactionBatch,
        mode: C.SubmitMode,
        controller: RetryController,
        key: str,
        staged: dict[str, dict] | None = None,
    ) -> tuple[Any, Decision]:
        """Same logical batch every attempt; only the checkpoint and signatures change.

        Every attempt is journalled PENDING for each set it carries before it is
        sent. ``staged`` collects per-row outputs that are stored alongside, so a
        row found to have landed on resume still reports what it created.
        """

        async def journal(signed):
            for s in batch.sets:
                await self.ledger.record_submission(
                    name, s.op_key, s.unit, signed.signature, C.UnitState.PENDING,
                    last_valid_height=signed.checkpoint.last_valid_height,
                    edition=s.outputs.get("edition"),
                )
                if staged is not None:
                    staged.setdefault(s.op_key, {}).update(s.outputs)
                    await self.ledger.record(name, s.op_key, C.OpStatus.IN_FLIGHT, detail=staged[s.op_key])

        attempts = 0
        while True:
            attempts += 1
            try:
                outcome = await self.engine.submit(batch, mode, before_send=journal)
                return outcome, controller.succeeded()
            except Exception as e:
                if batch.state is C.BatchState.REJECTED:
                    await self.ledger.mark_submission(batch.signatures[-1], C.UnitState.SUPERSEDED)
                decision = controller.failed(e, attempts, key=key)
            if decision.action is Action.ADVANCE:
                return None, decision
            await controller.wait(decision)

    async def _settle_attempts(self, name: str, key: str, controller: RetryController) -> set[int]:
        """Units of ``key`` that an earlier attempt already delivered.

        PENDING attempts left by an interrupted run are looked up; one that is still
        within its checkpoint window is polled until it lands or expires.
        """
        landed = {s["unit"] for s in await self.ledger.submissions(name, C.UnitState.CONFIRMED, key=key)}
        while True:
            live = 0
            height = await self.engine.network.current_height()
            for sub in await self.ledger.submissions(name, C.UnitState.PENDING, key=key):
                status = await self.engine.network.fetch_signature_status(sub["signature"])
                if status in CONFIRMED_STATUSES:
                    log.info("%s: earlier attempt %s already landed", key, sub["signature"])
                    await self.ledger.mark_submission(sub["signature"], C.UnitState.CONFIRMED)
                    landed.add(sub["unit"])
                elif status == "failed":
                    await self.ledger.mark_submission(sub["signature"], C.UnitState.SUPERSEDED)
                elif sub["last_valid_height"] is not None and height <= sub["last_valid_height"]:
                    live += 1
            if not live:
                return landed
            log.info("%s: waiting on %d earlier attempt(s)", key, live)
            await controller.pause(C.POLL_INTERVAL)

    async def _finish(self, name: str, op: LogicalOperation, status: C.OpStatus, report: RunReport, **kw) -> None:
        op.advance(status)
        await self.ledger.record(name, op.key, status, row_index=op.index, **kw)
        match status:
            case C.OpStatus.COMPLETED:
                report.completed += 1
                await self.ledger.supersede_pending(name, op.key)
            case C.OpStatus.SKIPPED:
                report.skipped += 1
            case C.OpStatus.FAILED:
                report.failed += 1
                log.error("Row %d (%s) failed; re-include it in a later range", op.index, op.key)

    async def _finish_landed(self, name: str, op: LogicalOperation, report: RunReport) -> None:
        outputs = await self.ledger.detail_of(name, op.key)
        report.outputs.append({"key": op.key, **outputs})
        await self._finish(name, op, C.OpStatus.COMPLETED, report, processed=op.repeat, detail=outputs)

    def _forget(self, sets: list[InstructionSet]) -> None:
        self.registry.forget(i.address for s in sets for i in s.signers)

    # ---- one row at a time, confirmed ------------------------------------------

    async def _run_rows(self, name, flow, ops, chunker, controller, report) -> None:
        completed = await self.ledger.load(name)
        for pos, op in enumerate(ops):
            log.info("At %d out of %d", pos + 1, len(ops))
            if op.key in completed:
                log.debug("%s already completed", op.key)
                op.advance(C.OpStatus.COMPLETED)
                report.already_done += 1
                continue

            op.advance(C.OpStatus.IN_FLIGHT)
            await self.ledger.record(name, op.key, C.OpStatus.IN_FLIGHT, row_index=op.index)
            landed = await self._settle_attempts(name, op.key, controller)
            if len(landed) >= op.repeat:
                await self._finish_landed(name, op, report)
                continue

            sets: list[InstructionSet] = []
            decision = controller.succeeded()
            for unit in range(op.repeat):
                if unit in landed:
                    continue
                s, decision = await self._plan_with_retry(op, unit, controller)
                if s is None:
                    break
                sets.append(s)
            if decision.status is not C.OpStatus.COMPLETED:
                await self._finish(name, op, decision.status, report)
                continue

            staged: dict[str, dict] = {op.key: await self.ledger.detail_of(name, op.key)} if landed else {}
            for batch in chunker.chunk(sets):
                outcome, decision = await self._submit_with_retry(
                    name, batch, flow.mode, controller, op.key, staged
                )
                if outcome is None:
                    break
                report.units += len(batch.sets)
                await self.ledger.mark_submission(outcome.signature, C.UnitState.CONFIRMED)
            self._forget(sets)

            if decision.status is C.OpStatus.COMPLETED:
                outputs = staged.get(op.key, {})
                report.outputs.append({"key": op.key, **outputs})
                await self._finish(name, op, C.OpStatus.COMPLETED, report, processed=op.repeat, detail=outputs)
            else:
                await self._finish(name, op, decision.status, report)

    # ---- many rows per batch, confirmed ----------------------------------------

    async def _run_grouped(self, name, flow, ops, chunker, controller, report) -> None:
        completed = await self.ledger.load(name)
        pending: list[tuple[LogicalOperation, InstructionSet]] = []
        by_key: dict[str, LogicalOperation] = {}

        async def flush():
            sets = [s for _, s in pending]
            for batch in chunker.chunk(sets):
                outcome, decision = await self._submit_with_retry(
                    name, batch, flow.mode, controller, batch.op_keys[0], {}
                )
                if outcome is not None:
                    await self.ledger.mark_submission(outcome.signature, C.UnitState.CONFIRMED)
                for s in batch.sets:
                    op = by_key[s.op_key]
                    if outcome is not None:
                        report.units += 1
                        report.outputs.append({"key": op.key, **s.outputs})
                        await self._finish(name, op, C.OpStatus.COMPLETED, report, processed=1, detail=s.outputs)
                    else:
                        await self._finish(name, op, decision.status, report)
            self._forget(sets)
            pending.clear()

        for pos, op in enumerate(ops):
            log.info("At %d out of %d", pos + 1, len(ops))
            if op.key in completed:
                op.advance(C.OpStatus.COMPLETED)
                report.already_done += 1
                continue
            op.advance(C.OpStatus.IN_FLIGHT)
            if await self._settle_attempts(name, op.key, controller):
                await self._finish_landed(name, op, report)
                continue
            s, decision = await self._plan_with_retry(op, 0, controller)
            if s is None:
                await self._finish(name, op, decision.status, report)
                continue
            pending.append((op, s))
            by_key[op.key] = op
            if sum(len(x) for _, x in pending) >= flow.max_instructions:
                await flush()
        if pending:
            await flush()

    # ---- repeated units, fire-and-forget ---------------------------------------

    async def _run_counted(self, name, flow, ops, chunker, controller, report) -> None:
        processed = await self.ledger.processed(name)
        tally = await self.ledger.unit_tally(name)
        for pos, op in enumerate(ops):
            log.info("At %d out of %d", pos + 1, len(ops))
            accounted, next_label = tally.get(op.key, (0, 0))
            done = max(processed.get(op.key, 0), accounted)
            if done > processed.get(op.key, 0):
                # attempts journalled by a run that stopped before counting them
                await self.ledger.record(
                    name, op.key, C.OpStatus.IN_FLIGHT, row_index=op.index,
                    processed=done, detail={"repeat": op.repeat},
                )
            if done >= op.repeat:
                log.debug("%s already processed %d of %d", op.key, done, op.repeat)
                report.already_done += 1
                continue
            if done:
                log.info("Resuming %s at unit %d of %d", op.key, done, op.repeat)

            op.advance(C.OpStatus.IN_FLIGHT)
            # unit labels are never reused within a row
            cursor = Cursor(row=op.index, unit=max(done, next_label))
            while done < op.repeat:
                s, decision = await self._plan_with_retry(op, cursor.unit, controller)
                outcome = None
                if s is not None:
                    [batch] = chunker.chunk([s])
                    outcome, decision = await self._submit_with_retry(name, batch, flow.mode, controller, op.key)
                    self._forget([s])

                if outcome is not None:
                    report.units += 1
                    report.outputs.append({"key": op.key, "unit": cursor.unit, **s.outputs})
                else:
                    # Counted as processed; reconciliation re-opens it
                    log.warning("Unit %d of %s was not delivered (%s)", cursor.unit, op.key, decision.status)
                    await self.ledger.record_submission(
                        name, op.key, cursor.unit, f"unsent-{uuid.uuid4().hex}", C.UnitState.DROPPED,
                        edition=s.outputs.get("edition") if s else None,
                    )

                done += 1
                cursor = cursor.next_unit()
                await self.ledger.record(
                    name, op.key, C.OpStatus.IN_FLIGHT, row_index=op.index,
                    processed=done, detail={"repeat": op.repeat},
                )
            processed[op.key] = done
