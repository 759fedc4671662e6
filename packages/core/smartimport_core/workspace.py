"""Helpers for managing data paths."""

from __future__ import annotations

from pathlib import Path

from .settings import StorageSettings

SEEDS_ROOT = Path(__file__).resolve().parent / "seeds"


def data_root(storage: StorageSettings) -> Path:
    root = storage.data_root
    root.mkdir(parents=True, exist_ok=True)
    return root


def database_path(storage: StorageSettings) -> Path:
    return data_root(storage) / storage.database_name


def ledger_path(storage: StorageSettings) -> Path:
    return data_root(storage) / storage.ledger_name


def system_rules_path() -> Path:
    return SEEDS_ROOT / "system_rules.yaml"
