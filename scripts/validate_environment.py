#!/usr/bin/env python3
"""Validate local tee-time lottery environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from teelottery.repository.data_repository import DataRepository
from teelottery.services.lottery_service import LotteryProcessingService
from teelottery.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="teelottery-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "teelottery_validation.db",
        )
        repository = DataRepository(validation_settings)
        service = LotteryProcessingService(repository=repository, settings=validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except RuntimeError as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Demo club seeding
        lottery_date = datetime.now(timezone.utc).date() + timedelta(
            days=validation_settings.demo_seed_days_ahead
        )
        try:
            repository.seed_demo_data()
            pending = repository.list_pending_requests(lottery_date)
            if not pending.all:
                raise RuntimeError("no pending requests were seeded")
            ok, line = _print_result(
                "Demo club seeding",
                True,
                f": {len(pending.all)} requests",
            )
        except RuntimeError as exc:
            ok, line = _print_result("Demo club seeding", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Lottery dry run
        try:
            summary = service.preview_lottery(lottery_date)
            ok, line = _print_result(
                "Lottery preview",
                True,
                f": {summary.processed_count}/{summary.total_requests} assigned, "
                f"{summary.bookings_created} bookings",
            )
        except Exception as exc:  # pragma: no cover - runtime guard
            ok, line = _print_result("Lottery preview", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Tee-Time Lottery Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
