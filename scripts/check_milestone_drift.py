"""
Compare workflow milestone columns against the stage history ledger.

History is the source of truth. Without --yes the script only reports;
with --yes drifted milestone columns are rewritten from history.

Usage:
    python scripts/check_milestone_drift.py [--type VAT|LTD|NON_LTD] [--yes]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
from dotenv import load_dotenv

load_dotenv()

from numericalz.db import session_scope
from numericalz.services import workflow_engine
from numericalz.services.stages import WorkflowType, coerce_workflow_type


def check(workflow_types, repair: bool = False) -> int:
    with session_scope() as db:
        print("=" * 60)
        print("Milestone drift check" + (" (REPAIR)" if repair else " (dry run)"))
        print("=" * 60)
        total = 0
        for wtype in workflow_types:
            model = workflow_engine.workflow_model(wtype)
            workflows = db.query(model).all()
            drifted = 0
            for workflow in workflows:
                drift = workflow_engine.find_milestone_drift(db, wtype, workflow)
                if not drift:
                    continue
                drifted += 1
                for item in drift:
                    print(
                        f"[DRIFT] {wtype.value} {item['workflow_id']} {item['milestone']}: "
                        f"stored={item['stored_date']} ({item['stored_user_name']}) "
                        f"expected={item['expected_date']} ({item['expected_user_name']})"
                    )
                if repair:
                    fixed = workflow_engine.repair_milestones(db, wtype, workflow)
                    print(f"[FIXED] {wtype.value} {workflow.id}: {fixed} milestone(s)")
            print(f"[{wtype.value}] {len(workflows)} workflows checked, {drifted} with drift")
            total += drifted
        print("=" * 60)
        if total and not repair:
            print("Run again with --yes to rewrite drifted milestones from history.")
        return total


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Check milestone columns against workflow history")
    parser.add_argument("--type", dest="workflow_type", help="Limit to one workflow type")
    parser.add_argument("--yes", action="store_true", help="Repair drifted milestones")
    args = parser.parse_args()

    types = [coerce_workflow_type(args.workflow_type)] if args.workflow_type else list(WorkflowType)
    drifted = check(types, repair=args.yes)
    sys.exit(1 if drifted and not args.yes else 0)
