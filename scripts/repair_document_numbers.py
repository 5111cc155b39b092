#!/usr/bin/env python3
"""
Repair document numbers left inconsistent by older numbering code.

Finds drafts carrying a stacked draft marker (DRAFT-DRAFT-000003) and drafts
sharing a number within their scope. Stacked markers are reduced to one, and
in each duplicate group the most recently created draft keeps the number while
the others move to DRAFT-<digits>-<disambiguator>. Finalized duplicates are
only reported: they need manual review.

Usage:
    python scripts/repair_document_numbers.py --dry-run   # report only
    python scripts/repair_document_numbers.py --confirm   # apply fixes
    python scripts/repair_document_numbers.py --confirm --workspace acme
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Make the project root importable
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.core.config import settings
from src.core.database.session import async_session
from src.core.documents.numbering import NumberingService, RepairReport
from src.core.logging import configure_logging


def print_report(report: RepairReport, dry_run: bool) -> None:
    print("\n" + "=" * 70)
    print("DOCUMENT NUMBER REPAIR")
    print("=" * 70)

    print(f"\nStacked draft markers: {len(report.stacked_drafts)}")
    for document_id in report.stacked_drafts:
        print(f"  - document {document_id}")

    print(f"\nDuplicate draft numbers: {len(report.duplicate_groups)}")
    for group in report.duplicate_groups:
        print(
            f"  - {group.scope.workspace_id} {group.scope.document_type} "
            f"{group.scope.prefix}{group.number} ({group.scope.issue_year}): {group.count} documents"
        )

    if report.final_duplicates:
        print(f"\nFinalized duplicates (manual review): {len(report.final_duplicates)}")
        for group in report.final_duplicates:
            print(
                f"  ! {group.scope.workspace_id} {group.scope.document_type} "
                f"{group.scope.prefix}{group.number} ({group.scope.issue_year}): {group.count} documents"
            )

    if dry_run:
        if report.is_clean:
            print("\nNothing to repair.")
        else:
            print("\nDRY-RUN: no changes applied. Use --confirm to repair.")
        return

    print(f"\nRenamed: {len(report.renamed)}")
    for document_id, old_number, new_number in report.renamed:
        print(f"  - document {document_id}: {old_number} -> {new_number}")


async def main():
    parser = argparse.ArgumentParser(description="Repair duplicate and stacked document numbers")
    parser.add_argument("--dry-run", action="store_true", help="Report without changing anything")
    parser.add_argument("--confirm", action="store_true", help="Apply the repairs")
    parser.add_argument("--workspace", default=None, help="Limit the repair to one workspace")
    args = parser.parse_args()

    if not args.dry_run and not args.confirm:
        print("ERROR: pass --dry-run or --confirm")
        sys.exit(1)

    configure_logging()
    dry_run = args.dry_run

    print(f"\nEnvironment: {settings.app_env}")
    print(f"Database: {settings.database_url.split('@')[1] if '@' in settings.database_url else 'unknown'}")
    print(f"Workspace: {args.workspace or 'all'}")
    print(f"Mode: {'DRY-RUN' if dry_run else 'APPLY'}")

    async with async_session() as session:
        service = NumberingService(session)
        try:
            report = await service.repair(workspace_id=args.workspace, dry_run=dry_run)
        except Exception as e:
            await session.rollback()
            print(f"\nRepair failed, transaction rolled back: {e}")
            sys.exit(1)

    print_report(report, dry_run)


if __name__ == "__main__":
    asyncio.run(main())
