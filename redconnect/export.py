# file: redconnect/export.py
import csv, json
from typing import Dict, List

from .db import COLLECTIONS, Store


def collection_rows(store: Store, collection: str) -> List[Dict]:
    """Flat dict rows for a collection, in the same shape the tables hold."""
    _, _, _, to_row = COLLECTIONS[collection]
    return [to_row(item) for item in store.load(collection)]


def to_csv(path: str, rows: List[Dict]):
    # no rows -> an empty file, there is no header to write
    if not rows:
        with open(path, "w", newline="", encoding="utf-8"):
            pass
        return
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)


def to_json(path: str, rows: List[Dict]):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(rows, f, ensure_ascii=False, indent=2, default=str)


def snapshot(store: Store) -> Dict[str, List[Dict]]:
    """All four collections as JSON-ready model dumps (import format)."""
    return {name: [item.model_dump(mode="json") for item in store.load(name)]
            for name in COLLECTIONS}
