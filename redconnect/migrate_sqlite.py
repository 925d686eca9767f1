import argparse
import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, List

from .db import COLLECTIONS, Store, get_conn
from .errors import RedConnectError

logger = logging.getLogger(__name__)

# units referenced by a request must be loaded before it, queue last
IMPORT_ORDER = ["donors", "units", "requests", "action_queue"]


def import_snapshot(conn: sqlite3.Connection, data: Dict[str, List[dict]]) -> Dict[str, int]:
    """
    Replace the named collections with the snapshot's rows. Collections
    absent from the snapshot are left as they are.
    """
    unknown = [k for k in data if k not in COLLECTIONS]
    if unknown:
        raise ValueError(f"Unknown collections in snapshot: {', '.join(unknown)}")
    store = Store(conn)
    counts = {}
    for name in IMPORT_ORDER:
        if name in data:
            counts[name] = store.save(name, data[name])
    return counts


def main(argv=None):
    ap = argparse.ArgumentParser(description="Create the RedConnect database and load snapshots")
    ap.add_argument("--db", default="redconnect.db")
    ap.add_argument("--import-json", metavar="PATH",
                    help="snapshot produced by `redconnect export snapshot`")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    Path(args.db).parent.mkdir(parents=True, exist_ok=True)
    conn = get_conn(args.db)
    logger.info("Schema ready in %s", args.db)
    try:
        if args.import_json:
            with open(args.import_json, "r", encoding="utf-8") as f:
                counts = import_snapshot(conn, json.load(f))
            for name, n in counts.items():
                print(f"Imported {n} {name}.")
    except (RedConnectError, ValueError) as e:
        raise SystemExit(f"Import failed: {e}")
    finally:
        conn.close()
    print("Migration complete.")


if __name__ == "__main__":
    main()
