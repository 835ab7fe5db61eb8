"""Tests for the workbook initialization script."""

from __future__ import annotations

import openpyxl
import pytest

from workshop_erp import data_manager
from workshop_erp.constants import SEQUENCES_SHEET, Collection
from workshop_erp.records import column_titles
from workshop_erp.setup_workbook import create_master_workbook, main


def test_create_master_workbook_layout(tmp_path):
    """Every collection gets a sheet with a bold header, plus the sequence sheet."""

    path = create_master_workbook(tmp_path / "data" / "workshop.xlsx")

    workbook = openpyxl.load_workbook(path)
    assert set(workbook.sheetnames) == {collection.value for collection in Collection} | {SEQUENCES_SHEET}
    vehicles = workbook[Collection.VEHICLES.value]
    assert tuple(cell.value for cell in vehicles[1]) == column_titles(Collection.VEHICLES)
    assert vehicles["A1"].font.bold
    assert tuple(cell.value for cell in workbook[SEQUENCES_SHEET][1]) == data_manager.SEQUENCE_COLUMNS


def test_create_master_workbook_refuses_overwrite(master_workbook_path):
    with pytest.raises(FileExistsError):
        create_master_workbook(master_workbook_path)
    assert create_master_workbook(master_workbook_path, overwrite=True) == master_workbook_path.resolve()


def test_main_creates_workbook_from_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = store/workshop.xlsx\nWorkshopName = Officina\nSchemaVersion = 1.0.0\n"
    )

    assert main(["--config", str(config_path)]) == 0
    assert (tmp_path / "store" / "workshop.xlsx").exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
