"""Shared helpers for the wildfire BACI bat-activity analysis."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Mapping, Sequence

import pandas as pd

DATA_PATH = Path("data/bat_passes.csv")
OUTPUT_ROOT = Path("outputs/baci")

FIRE_YEAR = 2017

SITE_COLUMN = "site"
DATE_COLUMN = "date"
GROUP_COLUMN = "species_group"
COUNT_COLUMN = "count"
BURN_COLUMN = "burn"
FIRE_COLUMN = "fire"

# Raw category strings are part of the input contract and must match exactly.
BA_MAPPING: Mapping[str, str] = {"Pre": "before", "Post": "after"}
CI_MAPPING: Mapping[str, str] = {"Unburn": "control", "Burn": "impact"}
BA_LEVELS: Sequence[str] = ("before", "after")
CI_LEVELS: Sequence[str] = ("control", "impact")

# Nightly covariates measured per site-night.
WEATHER_COLUMNS: Sequence[str] = ("precip", "temp", "jday")

# Covariates standardized (z-scored) before modelling; visits is derived.
NUMERIC_COVARIATES: Sequence[str] = (*WEATHER_COLUMNS, "visits")

SITE_DESCRIPTOR_COLUMNS: Sequence[str] = ("habitat", "forest_type")

TIME_COLUMNS: Sequence[str] = ("sunset", "sunrise")

# Columns the raw tabular input must provide.
REQUIRED_COLUMNS: Sequence[str] = (
    SITE_COLUMN,
    DATE_COLUMN,
    GROUP_COLUMN,
    COUNT_COLUMN,
    *WEATHER_COLUMNS,
    *SITE_DESCRIPTOR_COLUMNS,
    BURN_COLUMN,
    FIRE_COLUMN,
)

# Response variables analysed by the study run.
RESPONSES: Sequence[str] = ("total_passes", "lowf_passes", "highf_passes")

# Fixed effects of the full model; visits_z adjusts for sampling effort and
# BA:CI is the BACI contrast.
FULL_MODEL_TERMS: Sequence[str] = ("BA", "CI", "precip_z", "temp_z", "jday_z", "visits_z")
FULL_MODEL_INTERACTIONS: Sequence[tuple[str, str]] = (("BA", "CI"),)

DELTA_AICC = 2.0
SINGULAR_TOLERANCE = 0.05
DISPERSION_BAND: tuple[float, float] = (0.1, 5.0)
GVIF_THRESHOLD = 3.0


@dataclass
class LoadResult:
    """Container for the typed dataset and associated diagnostics."""

    data: pd.DataFrame
    diagnostics: Mapping[str, object]


def prepare_output_dir(task_name: str, output_root: Path | None = None) -> Path:
    """Ensure the output directory for a run exists and return it."""

    root = Path(output_root) if output_root is not None else OUTPUT_ROOT
    directory = root / task_name
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def load_observations(data_path: Path | None = None) -> LoadResult:
    """Load the raw bat-pass table with harmonised dtypes for analysis."""

    path = Path(data_path) if data_path is not None else DATA_PATH
    if not path.exists():
        raise FileNotFoundError(f"Bat pass table not found at {path}.")

    raw = pd.read_csv(path)
    missing_columns = [col for col in REQUIRED_COLUMNS if col not in raw.columns]
    if missing_columns:
        raise KeyError(
            "The bat pass table is missing expected columns: "
            + ", ".join(missing_columns)
        )

    data = raw.copy()
    data[SITE_COLUMN] = data[SITE_COLUMN].astype("string")
    data[DATE_COLUMN] = pd.to_datetime(data[DATE_COLUMN], errors="coerce")
    data[GROUP_COLUMN] = data[GROUP_COLUMN].astype("string")
    data[COUNT_COLUMN] = pd.to_numeric(data[COUNT_COLUMN], errors="coerce")
    for column in WEATHER_COLUMNS:
        data[column] = pd.to_numeric(data[column], errors="coerce")
    for column in (*SITE_DESCRIPTOR_COLUMNS, BURN_COLUMN, FIRE_COLUMN):
        data[column] = data[column].astype("string")
    for column in TIME_COLUMNS:
        if column in data:
            data[column] = data[column].astype("string")

    diagnostics = {
        "data_path": str(path),
        "rows": len(data),
        "sites": int(data[SITE_COLUMN].nunique()),
        "unparsed_dates": int(data[DATE_COLUMN].isna().sum()),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
    return LoadResult(data=data, diagnostics=diagnostics)


def write_json(path: Path, payload: Mapping[str, object]) -> None:
    """Write a JSON payload with UTF-8 encoding."""

    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, default=str)


def write_summary(
    directory: Path,
    lines: Sequence[str],
    *,
    filename: str = "summary.txt",
    max_lines: int = 20,
) -> Path:
    """Persist a short summary text file (at most max_lines)."""

    trimmed = list(lines)[:max_lines]
    path = directory / filename
    with path.open("w", encoding="utf-8") as handle:
        handle.write("\n".join(trimmed).strip() + "\n")
    return path


def write_session_info(
    directory: Path,
    extra_packages: Sequence[str] | None = None,
) -> Path:
    """Record package versions used for the current analysis run."""

    packages = [
        "pandas",
        "numpy",
        "scipy",
        "statsmodels",
        "patsy",
    ]
    if extra_packages:
        packages.extend(extra_packages)

    versions: dict[str, str] = {}
    for pkg in packages:
        try:
            versions[pkg] = metadata.version(pkg)
        except metadata.PackageNotFoundError:
            continue

    path = directory / "session_info.txt"
    payload = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "packages": versions,
    }
    write_json(path, payload)
    return path


def format_bullet_summary(items: Mapping[str, object]) -> str:
    """Create a human-readable bullet summary from a mapping."""

    lines = [f"• {key}: {value}" for key, value in items.items()]
    return "\n".join(lines)


def indent_lines(text: str, spaces: int = 2) -> str:
    """Indent multi-line text for console display."""

    prefix = " " * spaces
    return "\n".join(prefix + line for line in text.splitlines())
