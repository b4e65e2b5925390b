import argparse
import asyncio
import dataclasses
import json
import logging
import uuid
from pathlib import Path

import bulkmint.constants as C
import bulkmint.programs as P
from bulkmint import flows as F
from bulkmint.config import cfg, load_config
from bulkmint.errors import AccountNotFound, BulkMintError, StateDecodeError
from bulkmint.layouts import Edition, MasterEdition, Record
from bulkmint.logging_config import setup_logging
from bulkmint.network import JsonRpcNetwork
from bulkmint.orchestrator import Orchestrator
from bulkmint.planner import OperationPlanner
from bulkmint.progress import ProgressLedger
from bulkmint.reconcile import reconcile
from bulkmint.retry import RetryController, policy_from_config
from bulkmint.signers import SignerRegistry, SigningContext
from bulkmint.submission import SubmissionEngine

log = logging.getLogger("bulkmint.cli")

COMMANDS = (
    "create-record",
    "create-master-edition",
    "mint-edition",
    "airdrop",
    "mint-tokens",
    "update-records",
    "refunds",
    "puff",
    "show",
    "reconcile",
)


def _common() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False)
    p.add_argument("-k", "--keypair", type=Path, default=Path("~/.config/solana/id.json"),
                   help="Operator keypair; signs every role that has no override.")
    p.add_argument("-u", "--url", help="RPC endpoint (default from config.toml or RPC_URL).")
    p.add_argument("--config", type=Path, help="Alternate config.toml.")
    p.add_argument("--update-authority", type=Path, help="Update authority keypair.")
    p.add_argument("--mint-authority", type=Path, help="Mint authority keypair.")
    p.add_argument("--account-authority", type=Path, help="Owner of the source holding account.")
    p.add_argument("--ledger", type=Path, help="Progress ledger database.")
    p.add_argument("--log-level", help="Override LOG_LEVEL.")
    return p


def _ranged() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False)
    p.add_argument("-f", "--file", type=Path, help="JSON array of input rows.")
    p.add_argument("-s", "--start", type=int, default=0, help="First row index (inclusive).")
    p.add_argument("-e", "--end", type=int, help="Last row index (exclusive).")
    p.add_argument("-p", "--previous", type=Path, help="Output of a previous run; its keys are skipped.")
    p.add_argument("-o", "--output", type=Path, help="Where to write this run's completed keys.")
    p.add_argument("--backoff", choices=("fixed", "exponential"), help="Retry strategy for confirmed flows.")
    p.add_argument("--max-attempts", type=int, help="Give up on a row after this many attempts (0 = never).")
    return p


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="bulkmint", description="Bulk, resumable ledger mutations.")
    sub = parser.add_subparsers(dest="command", required=True)
    common, ranged = _common(), _ranged()

    p = sub.add_parser("create-record", parents=[common, ranged], help="Create records (optionally with a new mint).")
    p.add_argument("--name")
    p.add_argument("--symbol", default="")
    p.add_argument("--uri")
    p.add_argument("--seller-fee-basis-points", type=int, default=0)
    p.add_argument("--creators", type=Path, help="JSON file with [{address, verified, share}, ...].")
    p.add_argument("--mint", help="Use an existing mint instead of creating one.")
    p.add_argument("--recipient", help="Mint one unit into a new holding account owned by this identity.")
    p.add_argument("--master-edition", action="store_true", help="Also create the master edition.")
    p.add_argument("--max-supply", type=int)
    p.add_argument("--immutable", action="store_true")

    p = sub.add_parser("create-master-edition", parents=[common, ranged], help="Create a master edition for a mint.")
    p.add_argument("--mint", required=True)
    p.add_argument("--max-supply", type=int)
    p.add_argument("--recipient")

    p = sub.add_parser("mint-edition", parents=[common, ranged], help="Mint one edition from a master edition.")
    p.add_argument("--master-mint", required=True)
    p.add_argument("--recipient")
    p.add_argument("--run-id", help="Id of an interrupted invocation to resume; a fresh id by default.")

    p = sub.add_parser("airdrop", parents=[common, ranged], help="Mint editions to [identity, count] rows.")
    p.add_argument("--master-mint", required=True)
    p.add_argument("--reconcile", action="store_true", help="Reconcile submitted units after the run.")

    p = sub.add_parser("mint-tokens", parents=[common, ranged], help="Mint fungible units of an existing mint.")
    p.add_argument("--mint")
    p.add_argument("--amount", type=int)
    p.add_argument("--destination")
    p.add_argument("--recipient")
    p.add_argument("--run-id", help="Id of an interrupted invocation to resume; a fresh id by default.")

    p = sub.add_parser("update-records", parents=[common, ranged], help="Partially update records.")
    p.add_argument("--record", help="Single record address (instead of --file).")
    p.add_argument("--name")
    p.add_argument("--symbol")
    p.add_argument("--uri")
    p.add_argument("--seller-fee-basis-points", type=int)
    p.add_argument("--new-update-authority")
    p.add_argument("--primary-sale-happened", action="store_true", default=None)

    sub.add_parser("refunds", parents=[common, ranged], help="Transfer amounts to {pubkey, amount} rows.")
    sub.add_parser("puff", parents=[common, ranged], help="Pad records to their maximum size.")

    p = sub.add_parser("show", parents=[common], help="Decode a record and its edition.")
    p.add_argument("--mint", required=True)

    p = sub.add_parser("reconcile", parents=[common], help="Settle fire-and-forget units of a flow.")
    p.add_argument("--master-mint", help="Airdrop master mint (selects the airdrop flow).")
    p.add_argument("--flow", help="Ledger flow name, e.g. airdrop:<mint>.")
    return parser.parse_args(argv)


def ledger_flow(args) -> str:
    if args.command in ("airdrop", "mint-edition"):
        return f"{args.command}:{args.master_mint}"
    return args.command


def _need(args, *names):
    missing = [f"--{n.replace('_', '-')}" for n in names if getattr(args, n) is None]
    if missing:
        raise SystemExit(f"{args.command}: {', '.join(missing)} required without --file")


def invocation_key(args, base: str) -> str:
    """Single-shot commands are keyed per invocation, so repeating one mints again."""
    run_id = args.run_id or uuid.uuid4().hex[:12]
    if not args.run_id:
        log.info("Run id %s (pass --run-id %s to resume this invocation)", run_id, run_id)
    return f"{base}:{run_id}"


async def build_ops(args, network) -> list:
    rows = F.read_rows(args.file) if getattr(args, "file", None) else None
    match args.command:
        case "create-record":
            if rows is not None:
                return F.record_ops(rows)
            _need(args, "name", "uri")
            creators = json.loads(args.creators.read_text()) if args.creators else None
            return F.single_op(
                C.OpKind.CREATE_RECORD,
                args.name,
                name=args.name,
                symbol=args.symbol,
                uri=args.uri,
                seller_fee_basis_points=args.seller_fee_basis_points,
                creators=creators,
                mint=args.mint,
                recipient=args.recipient,
                master_edition=args.master_edition,
                max_supply=args.max_supply,
                is_mutable=not args.immutable,
            )
        case "create-master-edition":
            return F.single_op(
                C.OpKind.CREATE_MASTER_EDITION, args.mint,
                mint=args.mint, max_supply=args.max_supply, recipient=args.recipient,
            )
        case "mint-edition":
            recipient = args.recipient or SigningContext.from_keyfiles(args.keypair).payer.address
            return F.single_op(
                C.OpKind.MINT_EDITION, invocation_key(args, recipient), master_mint=args.master_mint, recipient=recipient
            )
        case "airdrop":
            _need(args, "file")
            return F.airdrop_ops(rows, args.master_mint)
        case "mint-tokens":
            if rows is not None:
                return F.mint_token_ops(rows)
            _need(args, "mint", "amount")
            return F.single_op(
                C.OpKind.MINT_TOKENS, invocation_key(args, args.mint),
                mint=args.mint, amount=args.amount, destination=args.destination, recipient=args.recipient,
            )
        case "update-records":
            if rows is not None:
                return F.update_ops(rows)
            _need(args, "record")
            return F.single_op(
                C.OpKind.UPDATE_RECORD, args.record,
                record=args.record, name=args.name, symbol=args.symbol, uri=args.uri,
                seller_fee_basis_points=args.seller_fee_basis_points,
                new_update_authority=args.new_update_authority,
                primary_sale_happened=args.primary_sale_happened,
            )
        case "refunds":
            _need(args, "file")
            return F.refund_ops(rows)
        case "puff":
            return await F.puff_ops(network)
    raise SystemExit(f"Unknown command {args.command}")


async def show(network, mint: str) -> dict:
    out: dict = {"mint": mint}
    address = P.record_address(mint)
    record = Record.decode(await network.fetch_account_state(address))
    out["record"] = {"address": address, **dataclasses.asdict(record)}
    edition_address = P.edition_address(mint)
    try:
        raw = await network.fetch_account_state(edition_address)
    except AccountNotFound:
        return out
    try:
        out["master_edition"] = {"address": edition_address, **dataclasses.asdict(MasterEdition.decode(raw))}
    except StateDecodeError:
        out["edition"] = {"address": edition_address, **dataclasses.asdict(Edition.decode(raw))}
    return out


async def run(args) -> int:
    conf = load_config(args.config) if args.config else cfg
    rpc = conf["rpc"]
    network = JsonRpcNetwork(
        args.url or rpc["url"],
        commitment=rpc.get("commitment", "confirmed"),
        timeout=float(rpc.get("timeout", C.RPC_TIMEOUT)),
        poll_interval=float(rpc.get("poll_interval", C.POLL_INTERVAL)),
    )
    async with network:
        if args.command == "show":
            print(json.dumps(await show(network, args.mint), indent=2))
            return 0

        ledger = ProgressLedger(args.ledger or conf["ledger"]["path"])
        if args.command == "reconcile":
            name = args.flow or (f"airdrop:{args.master_mint}" if args.master_mint else None)
            if name is None:
                raise SystemExit("reconcile: --flow or --master-mint required")
            report = await reconcile(network, ledger, name)
            return 0 if not report.pending else 2

        signing = SigningContext.from_keyfiles(
            args.keypair,
            update_authority=args.update_authority,
            mint_authority=args.mint_authority,
            account_authority=args.account_authority,
        )
        registry = SignerRegistry(signing)
        programs = conf.get("programs", {})
        planner = OperationPlanner(
            network, signing, registry, ledger, program_id=programs.get("metadata", C.METADATA_PROGRAM_ID)
        )
        batch = conf.get("batch", {})
        orchestrator = Orchestrator(
            planner,
            SubmissionEngine(network, registry),
            ledger,
            registry,
            max_bytes=int(batch.get("max_transaction_bytes", C.MAX_TRANSACTION_BYTES)),
        )

        flow = F.FLOWS[args.command]
        flow = dataclasses.replace(flow, max_instructions=int(batch.get("max_instructions", flow.max_instructions)))
        if args.backoff or args.max_attempts is not None or flow.mode is C.SubmitMode.CONFIRMED:
            policy = policy_from_config(conf.get("retry", {}), strategy=args.backoff, max_attempts=args.max_attempts)
        else:
            policy = flow.policy
        name = ledger_flow(args)

        if args.previous:
            await ledger.import_previous(name, args.previous)
        ops = F.select_range(await build_ops(args, network), args.start, args.end)
        try:
            report = await orchestrator.run(flow, ops, ledger_flow=name, controller=RetryController(policy))
        finally:
            if args.output:
                await ledger.export_json(name, args.output, counters=flow.counted)

        for out in report.outputs:
            log.info("%s", out)
        if flow.counted and args.reconcile:
            await reconcile(network, ledger, name)
        return 1 if report.failed else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except BulkMintError as e:
        log.error("Aborting: %s%s", e, f" (row {e.key})" if e.key else "")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted; progress so far is in the ledger")
        return 130
