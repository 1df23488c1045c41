#!/usr/bin/env python3
"""
Approval Workflow Engine — Directory Seed Script.

Loads an org chart JSON file into the employees table (upsert by email).

Usage:
    python scripts/seed_directory.py
    python scripts/seed_directory.py --file path/to/org_chart.json
    python scripts/seed_directory.py --verbose
"""

import argparse
import logging
import sys

sys.path.insert(0, ".")

from approval_engine import create_app
from approval_engine.services.directory_admin import SAMPLE_ORG_CHART, seed_employees


def main():
    parser = argparse.ArgumentParser(description="Seed the employee directory")
    parser.add_argument("--file", default=SAMPLE_ORG_CHART, help="Org chart JSON file")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    app = create_app()
    if args.verbose:
        logging.getLogger("approval_engine").setLevel(logging.DEBUG)

    with app.app_context():
        count = seed_employees(args.file)
    print(f"✅ {count} employees loaded from {args.file}")


if __name__ == "__main__":
    main()
