#!/usr/bin/env python3
"""
Policy document validation script for the Tenant Access Layer.
This script parses policy documents, validates every policy and reports
equal-priority ALLOW/DENY conflicts.
"""

import argparse
import sys
from pathlib import Path
from typing import List

from service_policy.app.errors import DuplicatePolicyIdError, InvalidPolicyError, PolicyFormatError
from service_policy.app.rules.loader import load_into_store, load_policies
from service_policy.app.rules.store import PolicyStore

POLICY_SUFFIXES = (".yaml", ".yml", ".json")


def find_policy_files(paths: List[str]) -> List[Path]:
    """Expand directories into the policy documents they contain."""
    files = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*") if p.suffix in POLICY_SUFFIXES))
        else:
            files.append(path)
    return files


def validate_policy_file(path: Path, store: PolicyStore) -> List[str]:
    """Load one document into ``store`` and return its errors."""
    errors = []

    try:
        policies = load_policies(path)
    except PolicyFormatError as e:
        errors.append(f"{e.message} {e.details or ''}".strip())
        return errors

    try:
        load_into_store(store, policies)
    except (InvalidPolicyError, DuplicatePolicyIdError) as e:
        errors.append(f"{e.message} {e.details or ''}".strip())

    return errors


def main(argv=None):
    """Main function to validate policy documents."""
    parser = argparse.ArgumentParser(description="Validate policy documents")
    parser.add_argument("paths", nargs="*", default=["config"], help="Policy files or directories")
    parser.add_argument("--strict", action="store_true", help="Treat conflicts as errors")
    args = parser.parse_args(argv)

    print("Validating policy documents...")

    files = find_policy_files(args.paths)
    if not files:
        print("No policy documents found")
        return 1

    store = PolicyStore()
    total_errors = 0

    for path in files:
        errors = validate_policy_file(path, store)

        if errors:
            print(f"❌ {path}: {len(errors)} validation errors")
            for error in errors:
                print(f"   - {error}")
            total_errors += len(errors)
        else:
            print(f"✅ {path}: policies are valid")

    conflicts = store.validate()
    for conflict in conflicts:
        print(f"⚠️  conflict: {conflict.message}")
    if args.strict:
        total_errors += len(conflicts)

    print(f"\nValidation complete: {len(store)} policies, {len(conflicts)} conflicts, {total_errors} total errors")

    if total_errors == 0:
        print("All policy documents are valid!")
        return 0
    else:
        print("Some policy documents have validation errors")
        return 1


if __name__ == "__main__":
    sys.exit(main())
