"""Shared pytest fixtures and utilities for the workshop store tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, List

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from workshop_erp import constants, core_logic, data_manager  # noqa: E402
from workshop_erp.records import (  # noqa: E402
    ClientRecord,
    LedgerEntryRecord,
    VehicleRecord,
    WorkOrderRecord,
)
from workshop_erp.setup_workbook import create_master_workbook  # noqa: E402
from workshop_erp.store import MemoryStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "WorkshopName = {workshop_name}\n"
    "SchemaVersion = {schema_version}\n"
    "Backend = {backend}\n\n"
    "[Backup]\n"
    "Directory = {backup_dir}\n"
    "MaxSnapshots = {max_snapshots}\n"
    "Enabled = {enabled}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    backup_dir: Path
    schema_version: str
    workshop_name: str


@dataclass(frozen=True)
class ClientTree:
    """Identifiers of a client subtree seeded by ``seed_client_tree``."""

    client_id: int
    vehicle_ids: List[int]
    work_order_ids: List[int]
    ledger_entry_ids: List[int]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "workshop.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        workshop_name: str = "Test Workshop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        backend: str = "workbook",
        max_snapshots: int = 3,
        enabled: bool = True,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        backup_dir = bundle_dir / "snapshots"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                workshop_name=workshop_name,
                schema_version=schema_version,
                backend=backend,
                backup_dir=backup_dir,
                max_snapshots=max_snapshots,
                enabled="true" if enabled else "false",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            backup_dir=backup_dir,
            schema_version=schema_version,
            workshop_name=workshop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[core_logic.RuntimeContext]:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    yield context
    core_logic.close_runtime_context(context)


@pytest.fixture
def memory_settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Settings selecting the in-memory document store."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "unused.xlsx",
        workshop_name="Test Workshop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        backend=constants.Backend.MEMORY,
        backup_dir=tmp_path / "snapshots",
        max_snapshots=3,
    )


@pytest.fixture
def memory_context(memory_settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context around a fresh in-memory store."""

    return core_logic.RuntimeContext(settings=memory_settings, store=MemoryStore())


@pytest.fixture(params=["workbook", "memory"])
def context(request: pytest.FixtureRequest) -> core_logic.RuntimeContext:
    """Run a test once per store backend."""

    if request.param == "workbook":
        return request.getfixturevalue("runtime_context")
    return request.getfixturevalue("memory_context")


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="workshop-cli", description="Workshop CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def seed_client_tree() -> Callable[..., ClientTree]:
    """Factory seeding a client with N vehicles, M work orders each, K income entries each."""

    def _seed(
        context: core_logic.RuntimeContext,
        *,
        vehicles: int,
        work_orders: int,
        entries: int,
        name: str = "Rossi Mario",
    ) -> ClientTree:
        client = core_logic.create_record(context, ClientRecord(name=name))
        vehicle_ids: List[int] = []
        order_ids: List[int] = []
        entry_ids: List[int] = []
        with context.store.write_scope() as scope:
            for v in range(vehicles):
                vehicle = core_logic.create_in_scope(
                    scope, VehicleRecord(plate=f"{name[:2].upper()}{v:03d}XY", client_id=client.id)
                )
                vehicle_ids.append(vehicle.id)
                for _ in range(work_orders):
                    order = core_logic.create_in_scope(
                        scope,
                        WorkOrderRecord(vehicle_id=vehicle.id, labor_cost=Decimal("100.00"), parts_cost=Decimal("50.00")),
                    )
                    order_ids.append(order.id)
                    for _ in range(entries):
                        entry = core_logic.create_in_scope(
                            scope,
                            LedgerEntryRecord(
                                entry_type=constants.LedgerEntryType.INCOME,
                                amount=Decimal("10.00"),
                                work_order_id=order.id,
                            ),
                        )
                        entry_ids.append(entry.id)
        return ClientTree(client.id, vehicle_ids, order_ids, entry_ids)

    return _seed
