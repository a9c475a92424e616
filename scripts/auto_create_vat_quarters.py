"""
Open the next VAT quarter for every client whose current quarter has ended.

Meant to run daily from cron. New quarters carry over the assignee of the
client's last assigned quarter.

Usage:
    python scripts/auto_create_vat_quarters.py [--date YYYY-MM-DD] [--dry-run]
"""
import sys
import os
import argparse
from datetime import date

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
from dotenv import load_dotenv

load_dotenv()

from numericalz.db import session_scope
from numericalz.services import bulk, deadlines


def run(today: date, dry_run: bool = False) -> int:
    with session_scope() as db:
        print("=" * 60)
        print(f"VAT quarter auto-create for {today.isoformat()}" + (" (dry run)" if dry_run else ""))
        print("=" * 60)
        if dry_run:
            ids = bulk.clients_due_vat_quarter(db, today)
            for client_id in ids:
                print(f"[DUE] {client_id}")
            print(f"{len(ids)} client(s) due")
            return 0

        result = bulk.auto_create_vat_quarters(db, today=today)
        for item in result.successful:
            print(f"[CREATE] {item['id']} {item['quarter_period']} assignee={item['assigned_user_id']}")
        for item in result.failed:
            print(f"[ERROR] {item['id']}: {item['error']}")
        print("=" * 60)
        print(f"{len(result.successful)} created, {len(result.failed)} failed")
        return len(result.failed)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create VAT quarters for clients whose quarter has ended")
    parser.add_argument("--date", help="Run as of this date (YYYY-MM-DD); defaults to today in London")
    parser.add_argument("--dry-run", action="store_true", help="List due clients without creating anything")
    args = parser.parse_args()

    as_of = date.fromisoformat(args.date) if args.date else deadlines.today_london()
    failed = run(as_of, dry_run=args.dry_run)
    sys.exit(1 if failed else 0)
