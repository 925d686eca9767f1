import argparse
import logging
import sys
from typing import Tuple

from . import compatibility
from .audit import fetch_audit
from .config import load_settings
from .constants import UNIT_TYPES, URGENCY_LEVELS, BLOOD_TYPES
from .db import Store, get_conn
from .errors import Outcome, RedConnectError
from .export import collection_rows, snapshot, to_csv, to_json
from .offline import Connectivity
from .reports import export_audit_pdf, export_inventory_pdf, export_requests_pdf
from .service import Service


def _target(pair: str) -> Tuple[str, int]:
    t, sep, n = pair.partition("=")
    if not sep or not t.strip():
        raise argparse.ArgumentTypeError(f"expected TYPE=COUNT, got {pair!r}")
    try:
        return t.strip(), int(n)
    except ValueError:
        raise argparse.ArgumentTypeError(f"count for {t.strip()} must be an integer, got {n!r}")


def _report(outcome: Outcome) -> int:
    tag = "QUEUED" if outcome.queued else ("OK" if outcome.ok else outcome.kind.upper())
    print(f"[{tag}] {outcome.message}")
    return 0 if outcome.ok else 1


def build_parser(settings) -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="redconnect", description="Blood allocation and inventory desk")
    ap.add_argument("--db", default=settings.db_path)
    ap.add_argument("--actor", default=settings.actor)
    ap.add_argument("--compat-file", default=settings.compat_file,
                    help="JSON compatibility table overriding the built-in one")
    ap.add_argument("--offline", action="store_true", help="queue mutations instead of applying them")
    ap.add_argument("--log-level", default=settings.log_level)
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("stock", help="available units per type with expiry risk")
    p.add_argument("--bank")

    p = sub.add_parser("units", help="list ledger units")
    p.add_argument("--bank")
    p.add_argument("--status", choices=["Available", "Allocated", "Dispatched"])

    p = sub.add_parser("add-unit", help="register a bag")
    p.add_argument("type", choices=UNIT_TYPES)
    p.add_argument("--collected", help="collection date (YYYY-MM-DD or dd/mm/yyyy)")
    p.add_argument("--expires")
    p.add_argument("--volume", type=int)
    p.add_argument("--source")
    p.add_argument("--bank")
    p.add_argument("--id")

    p = sub.add_parser("remove-unit", help="de-register a bag")
    p.add_argument("unit_id")

    p = sub.add_parser("adjust", help="quick adjust: TYPE=COUNT ...")
    p.add_argument("targets", nargs="+", type=_target, metavar="TYPE=COUNT")
    p.add_argument("--bank")

    p = sub.add_parser("submit", help="submit an emergency request")
    p.add_argument("--patient", required=True)
    p.add_argument("--type", required=True, choices=BLOOD_TYPES)
    p.add_argument("--units", type=int, required=True)
    p.add_argument("--hospital", required=True)
    p.add_argument("--urgency", choices=URGENCY_LEVELS, default="Normal")
    p.add_argument("--platelets", action="store_true")
    p.add_argument("--contact", default="")
    p.add_argument("--location", default="")

    p = sub.add_parser("requests", help="list requests")
    p.add_argument("--all", action="store_true", help="include received requests")
    p.add_argument("--hospital")

    p = sub.add_parser("candidates", help="units that could fill a request")
    p.add_argument("request_id")
    p.add_argument("--bank")

    p = sub.add_parser("allocate", help="bind units to a request")
    p.add_argument("request_id")
    p.add_argument("unit_ids", nargs="+")

    for name in ("dispatch", "receive"):
        p = sub.add_parser(name)
        p.add_argument("request_id")

    sub.add_parser("queue", help="show queued offline actions")
    sub.add_parser("flush", help="replay queued offline actions")

    p = sub.add_parser("export", help="export a collection")
    p.add_argument("what", choices=["units", "requests", "donors", "audit", "snapshot"])
    p.add_argument("--format", choices=["csv", "json"], default="json")
    p.add_argument("--out", required=True)

    p = sub.add_parser("report", help="PDF report")
    p.add_argument("what", choices=["inventory", "requests", "audit"])
    p.add_argument("--out", required=True)
    p.add_argument("--redact", action="store_true", help="hide patient details")
    return ap


def run(args, service: Service) -> int:
    if args.cmd == "stock":
        counts = service.aggregate_counts(args.bank)
        risks = service.expiry_risk(args.bank)
        for t in UNIT_TYPES:
            flag = "" if risks[t] == "safe" else f"  ({risks[t]} expiry)"
            print(f"{t:>9}  {counts[t]:>4}{flag}")
        return 0
    if args.cmd == "units":
        for u in service.units(bank_id=args.bank, status=args.status):
            print(f"{u.id:<20} {u.type:<9} {u.volume:>4}ml  {u.collection_date} -> {u.expiry_date}  {u.status:<10} {u.source}")
        return 0
    if args.cmd == "add-unit":
        return _report(service.register_unit(args.type, args.collected, args.expires, args.volume,
                                             args.source, args.bank, args.id))
    if args.cmd == "remove-unit":
        return _report(service.remove_unit(args.unit_id))
    if args.cmd == "adjust":
        outcome = service.reconcile_aggregate(dict(args.targets), args.bank)
        code = _report(outcome)
        if outcome.ok and not outcome.queued:
            rep = outcome.data
            for t, ids in rep.added.items():
                print(f"  + {len(ids)} {t}")
            for t, ids in rep.removed.items():
                print(f"  - {len(ids)} {t}: {', '.join(ids)}")
            for t, n in rep.clamped.items():
                print(f"  ! {t}: target was {n} below zero, clamped to 0")
        return code
    if args.cmd == "submit":
        return _report(service.submit_request({
            "patient_name": args.patient, "blood_type": args.type, "units_needed": args.units,
            "hospital": args.hospital, "urgency": args.urgency, "is_platelet_request": args.platelets,
            "contact": args.contact, "location": args.location,
        }))
    if args.cmd == "requests":
        for r in service.list_requests(include_closed=args.all, hospital=args.hospital):
            kind = "PLT" if r.is_platelet_request else r.blood_type
            print(f"{r.id:<14} {r.status:<10} {kind:<4} x{r.units_needed}  {r.urgency:<8} {r.hospital}")
        return 0
    if args.cmd == "candidates":
        for u in service.candidate_units(args.request_id, args.bank):
            print(f"{u.id:<20} {u.type:<9} expires {u.expiry_date}")
        return 0
    if args.cmd == "allocate":
        return _report(service.allocate(args.request_id, args.unit_ids))
    if args.cmd == "dispatch":
        return _report(service.dispatch(args.request_id))
    if args.cmd == "receive":
        return _report(service.receive(args.request_id))
    if args.cmd == "queue":
        for item in service.pending_actions():
            err = f"  last error: {item.last_error}" if item.last_error else ""
            print(f"#{item.seq:<4} {item.action:<20} {item.queued_at}  tries={item.attempts}{err}")
        return 0
    if args.cmd == "flush":
        rep = service.flush_queue()
        if rep.skipped:
            print("Flush skipped (offline or already running).")
            return 1
        print(f"Replayed {len(rep.succeeded)}, kept {len(rep.failed)}.")
        for seq, action, reason in rep.failed:
            print(f"  #{seq} {action}: {reason}")
        return 0 if not rep.failed else 1
    if args.cmd == "export":
        store = Store(service.conn)
        if args.what == "snapshot":
            to_json(args.out, snapshot(store))
            print(f"Snapshot written to {args.out}")
            return 0
        rows = fetch_audit(service.conn) if args.what == "audit" else collection_rows(store, args.what)
        (to_csv if args.format == "csv" else to_json)(args.out, rows)
        print(f"{len(rows)} rows written to {args.out}")
        return 0
    if args.cmd == "report":
        if args.what == "inventory":
            export_inventory_pdf(service.units(), args.out)
        elif args.what == "requests":
            export_requests_pdf(service.list_requests(include_closed=True), args.out, include_pii=not args.redact)
        else:
            export_audit_pdf(fetch_audit(service.conn), args.out, redact_details=args.redact)
        print(f"Report written to {args.out}")
        return 0
    return 2


def main(argv=None):
    settings = load_settings()
    ap = build_parser(settings)
    args = ap.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if args.compat_file:
        try:
            compatibility.use_matrix(compatibility.load_matrix(args.compat_file))
        except (OSError, ValueError) as e:
            ap.error(f"cannot use compatibility table {args.compat_file}: {e}")

    conn = get_conn(args.db)
    try:
        service = Service(conn, connectivity=Connectivity(online=not args.offline), actor=args.actor)
        return run(args, service)
    except RedConnectError as e:
        print(f"[{e.kind.upper()}] {e}")
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
