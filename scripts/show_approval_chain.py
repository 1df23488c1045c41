#!/usr/bin/env python3
"""
Approval Workflow Engine — Chain Preview.

Prints the approval chain a request would get, without persisting anything.

Usage:
    python scripts/show_approval_chain.py jane@corp.example
    python scripts/show_approval_chain.py jane@corp.example --kind purchase
    python scripts/show_approval_chain.py jane@corp.example --kind task_completion \
        --originator hana@corp.example --weight 20
"""

import argparse
import sys

sys.path.insert(0, ".")

from approval_engine import create_app
from approval_engine.core.exceptions import EmptyChainError, NotFoundError, ValidationError
from approval_engine.models.approval import WORKFLOW_KINDS
from approval_engine.services import approval_service


def main():
    parser = argparse.ArgumentParser(description="Preview an approval chain")
    parser.add_argument("requester", help="Requester (or assignee) email")
    parser.add_argument("--kind", default="general", choices=sorted(WORKFLOW_KINDS))
    parser.add_argument("--finance", action="store_true", help="Force a finance step")
    parser.add_argument("--skip", type=int, default=0, help="Skip the first N levels")
    parser.add_argument("--originator", help="Project creator (task_completion only)")
    parser.add_argument("--weight", type=float, default=0.0, help="Task weight (task_completion only)")
    args = parser.parse_args()

    if args.kind == "task_completion":
        options = {"originator_key": args.originator, "task_weight": args.weight}
    else:
        options = {"require_finance": args.finance, "skip_levels": args.skip}

    app = create_app()
    with app.app_context():
        try:
            preview = approval_service.preview(args.requester, args.kind, **options)
        except (NotFoundError, EmptyChainError, ValidationError) as exc:
            print(f"❌ {exc}")
            sys.exit(1)

    print(f"{preview['workflow_kind']} chain for {args.requester}: "
          f"{preview['total_steps']} step(s), {preview['estimated_time']['display_text']}")
    for step in preview["steps"]:
        if step["status"] == "skipped":
            print(f"  L{step['level']}  (skipped)")
            continue
        roles = ", ".join(step["all_capacities"])
        print(f"  L{step['level']}  {step['approver']:<24s} {step['approver_key']:<28s} [{roles}]")


if __name__ == "__main__":
    main()
