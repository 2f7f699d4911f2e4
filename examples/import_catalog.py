#!/usr/bin/env python3
"""Example: Validate, preview, import, export or roll back a catalog workbook.

Connection and tenant settings come from the environment (or a .env file):
SUPABASE_DB_URL, CATALOG_TENANT_ID, CATALOG_SKU_PREFIX, ...
"""

import json
import sys

from catalogkit import ImportPipeline, Settings, configure_logging
from catalogkit.ingest.supabase_client import SupabaseClient


def print_issues(result):
    for issue in result.get("errors", []):
        print(f"  ERROR   {issue['code']:4} {issue['sheet']} row {issue['row']} [{issue['column']}]: {issue['message']}")
    for issue in result.get("warnings", []):
        print(f"  WARNING {issue['code']:4} {issue['sheet']} row {issue['row']} [{issue['column']}]: {issue['message']}")


def main(argv):
    if len(argv) < 2:
        print("Usage: python import_catalog.py <command> [args]")
        print("\nCommands:")
        print("  validate <file.xlsx>")
        print("  preview  <file.xlsx>")
        print("  import   <file.xlsx> [W1,W3,...]   acknowledged warning codes")
        print("  export   <file.xlsx>")
        print("  history")
        print("  rollback <import_id>")
        return 1

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    db = SupabaseClient.from_settings(settings)
    pipeline = ImportPipeline(db, settings=settings)

    command = argv[1]
    try:
        if command == "validate":
            result = pipeline.validate(argv[2])
            print(f"Valid: {result['valid']}")
            print_issues(result)
            return 0 if result["valid"] else 2

        if command == "preview":
            result = pipeline.preview(argv[2])
            print_issues(result)
            if result["diff"] is not None:
                print(json.dumps(result["diff"]["summary"], indent=2))
            return 0 if result["valid"] else 2

        if command == "import":
            acknowledged = argv[3].split(",") if len(argv) > 3 else []
            result = pipeline.execute(argv[2], acknowledged_warnings=acknowledged, file_name=argv[2])
            if result["success"]:
                print(f"✓ Import {result['importId']} committed")
                print(json.dumps(result["summary"], indent=2))
                return 0
            print(f"✗ {result['error']['type']}: {result['error']['message']}")
            print_issues(result)
            return 2

        if command == "export":
            pipeline.export(argv[2])
            print(f"✓ Catalog exported to: {argv[2]}")
            return 0

        if command == "history":
            for record in pipeline.list_snapshots():
                print(f"  {record['id']}  {record.get('created_at')}  {record.get('file_name')}  "
                      f"{record.get('rows_imported')} change(s)")
            return 0

        if command == "rollback":
            result = pipeline.rollback(argv[2])
            if result["success"]:
                print(f"✓ Import {result['importId']} rolled back")
                print(json.dumps(result["restored"], indent=2))
                return 0
            print(f"✗ {result['error']['type']}: {result['error']['message']}")
            return 2

        print(f"Unknown command: {command}")
        return 1

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main(sys.argv))
