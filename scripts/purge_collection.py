#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from concierge.container import container
from concierge.deletion_guard import purge_documents
from concierge.errors import ApiError
from concierge.logging_utils import configure_logging


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete documents of one collection through the deletion guard.",
    )
    parser.add_argument("collection")
    parser.add_argument("--caller", required=True, help="Operator or service performing the delete.")
    parser.add_argument("--reason", required=True, help="Why the documents are being deleted.")
    parser.add_argument("--id", dest="document_ids", action="append", default=[], help="Document id (repeatable).")
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Required for protected collections.",
    )
    args = parser.parse_args(argv)
    configure_logging()

    try:
        result = purge_documents(
            container.store,
            container.deletion_guard,
            collection=args.collection,
            caller=args.caller,
            reason=args.reason,
            confirmed=args.confirm,
            document_ids=args.document_ids or None,
            limit=args.limit,
        )
    except ApiError as exc:
        print(json.dumps({"success": False, "code": exc.code, "message": exc.message}, ensure_ascii=True))
        return 2
    print(json.dumps({"success": True, "result": result}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
