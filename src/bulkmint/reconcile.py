import logging
from collections import defaultdict
from dataclasses import dataclass, field

import bulkmint.constants as C
from bulkmint.network import Network
from bulkmint.progress import ProgressLedger
from bulkmint.submission import CONFIRMED_STATUSES

log = logging.getLogger("bulkmint.reconcile")


@dataclass(slots=True)
class ReconcileReport:
    confirmed: int = 0
    dropped: int = 0
    pending: int = 0
    reopened: dict[str, int] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)


async def reconcile(network: Network, ledger: ProgressLedger, flow: str) -> ReconcileReport:
    """Settle fire-and-forget units of ``flow`` against the network.

    Attempts are grouped by unit. A unit with a confirmed attempt becomes
    CONFIRMED and its other attempts SUPERSEDED. A unit whose attempts are all
    unknown (or failed) past their checkpoint, or that only has an unsent
    placeholder, is DROPPED. Units with an attempt still inside its checkpoint
    window stay PENDING. For every row with dropped units the processed counter
    is lowered by that many units, so the next invocation delivers exactly the
    missing ones. Rows whose units are all confirmed become Completed.
    """
    report = ReconcileReport()
    height = await network.current_height()
    units: dict[tuple[str, int], list[dict]] = defaultdict(list)
    for sub in await ledger.submissions(flow, C.UnitState.PENDING, C.UnitState.DROPPED):
        units[(sub["key"], sub["unit"])].append(sub)

    dropped: dict[str, list[dict]] = defaultdict(list)
    for (key, _), attempts in units.items():
        landed, live, expired = None, 0, []
        for sub in attempts:
            if sub["state"] == C.UnitState.DROPPED:
                expired.append(sub)
                continue
            status = await network.fetch_signature_status(sub["signature"])
            if status in CONFIRMED_STATUSES and landed is None:
                landed = sub
            elif status == "failed" or (sub["last_valid_height"] is not None and height > sub["last_valid_height"]):
                expired.append(sub)
            else:
                live += 1

        if landed is not None:
            await ledger.mark_submission(landed["signature"], C.UnitState.CONFIRMED)
            for sub in attempts:
                if sub is not landed:
                    await ledger.mark_submission(sub["signature"], C.UnitState.SUPERSEDED)
            report.confirmed += 1
        elif live:
            report.pending += 1
        else:
            first, *rest = expired
            await ledger.mark_submission(first["signature"], C.UnitState.DROPPED)
            for sub in rest:
                await ledger.mark_submission(sub["signature"], C.UnitState.SUPERSEDED)
            dropped[key].append(first)
            report.dropped += 1

    processed = await ledger.processed(flow)
    for key, subs in dropped.items():
        n = processed.get(key, 0) - len(subs)
        log.warning("%s: %d unit(s) dropped, processed counter back to %d", key, len(subs), max(n, 0))
        await ledger.rollback_processed(flow, key, max(n, 0))
        for sub in subs:
            await ledger.mark_submission(sub["signature"], C.UnitState.REOPENED)
        report.reopened[key] = max(n, 0)

    report.completed = await _complete_rows(ledger, flow)
    log.info(
        "Reconciled %s: %d confirmed, %d dropped, %d still pending, %d rows completed",
        flow, report.confirmed, report.dropped, report.pending, len(report.completed),
    )
    return report


async def _complete_rows(ledger: ProgressLedger, flow: str) -> list[str]:
    """Mark rows Completed when every processed unit is confirmed and the row is fully processed."""
    subs = await ledger.submissions(flow)
    confirmed: dict[str, int] = defaultdict(int)
    open_keys: set[str] = set()
    for sub in subs:
        if sub["state"] == C.UnitState.CONFIRMED:
            confirmed[sub["key"]] += 1
        elif sub["state"] in (C.UnitState.PENDING, C.UnitState.DROPPED):
            open_keys.add(sub["key"])

    done = []
    for key, count in (await ledger.processed(flow)).items():
        repeat = await ledger.repeat_of(flow, key)
        if key in open_keys or repeat is None or count < repeat or confirmed[key] < repeat:
            continue
        if await ledger.status(flow, key) is not C.OpStatus.COMPLETED:
            await ledger.record(flow, key, C.OpStatus.COMPLETED)
            done.append(key)
    return done
