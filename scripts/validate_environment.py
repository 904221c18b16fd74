#!/usr/bin/env python3
"""Check that a local capacity engine install can start and answer requests."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date, timedelta
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from capacity_engine.repository.data_repository import DataRepository
from capacity_engine.services.capacity_service import CapacityService
from capacity_engine.services.pricing_service import PricingService
from capacity_engine.services.rule_service import RuleService
from capacity_engine.utils.config import get_settings

SEPARATOR_LINE = "=" * 48

REQUIRED_PACKAGES = [
    ("fastapi", "fastapi"),
    ("uvicorn", "uvicorn"),
    ("pydantic", "pydantic"),
    ("httpx", "httpx"),
]


def _result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def _check_packages() -> tuple[bool, str]:
    problems: list[str] = []
    for module_name, dist_name in REQUIRED_PACKAGES:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            problems.append(f"{module_name} ({exc})")
    if problems:
        return _result("Required packages", False, "missing -> " + "; ".join(problems))
    return _result("Required packages: all importable", True)


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="capacity-engine-env-")

    if sys.version_info >= (3, 11):
        ok, line = _result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _result("Python version >= 3.11", False, f"found {sys.version.split()[0]}")
    results.append(line)
    all_passed = all_passed and ok

    ok, line = _check_packages()
    results.append(line)
    all_passed = all_passed and ok

    try:
        settings = replace(get_settings(), database_path=Path(temp_dir) / "validation.db")
        repository = DataRepository(settings)

        try:
            repository.initialize_database()
            ok, line = _result("Database initialization", True)
        except RuntimeError as exc:
            ok, line = _result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        try:
            seeded = repository.seed_demo_data()
            if seeded <= 0:
                raise RuntimeError("no demo destinations were created")
            ok, line = _result("Demo seed", True, f": {seeded} destinations")
        except RuntimeError as exc:
            ok, line = _result("Demo seed", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        rules = RuleService(repository=repository, settings=settings)
        capacity = CapacityService(repository=repository, settings=settings, rule_service=rules)
        pricing = PricingService(
            repository=repository,
            settings=settings,
            rule_service=rules,
            capacity_service=capacity,
        )
        visit_date = date.today() + timedelta(days=1)

        try:
            resolution = capacity.resolve(1, visit_date)
            ok, line = _result(
                "Capacity resolution",
                True,
                f": effective={resolution.effective_capacity} status={resolution.status.value}",
            )
        except Exception as exc:
            ok, line = _result("Capacity resolution", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        try:
            price = pricing.quote(1, visit_date, 2)
            ok, line = _result("Price quote", True, f": total={price.total_price}")
        except Exception as exc:
            ok, line = _result("Price quote", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Capacity Engine Environment Validation")
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
