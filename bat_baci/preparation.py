"""Reshape raw bat-pass observations into the analysis-ready BACI table."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Mapping, Sequence

import numpy as np
import pandas as pd

from . import common
from .errors import (
    DegenerateCovarianceError,
    InvalidObservationError,
    MalformedCategoryError,
)

logger = logging.getLogger(__name__)

PARTITIONS: Sequence[str] = ("full", "year1", "year2", "year3")


@dataclass(frozen=True)
class Observation:
    """One raw row: passes of one species group at one site on one night."""

    site: str
    date: datetime
    species_group: str
    count: int
    precip: float
    temp: float
    jday: float
    habitat: str
    forest_type: str
    burn: str
    fire: str
    sunset: str | None = None
    sunrise: str | None = None


@dataclass(frozen=True)
class SiteNight:
    """One prepared row: all species-group counts of a site-night."""

    site: str
    date: datetime
    year: int
    post_year: int
    ba: str
    ci: str
    visits: int
    habitat: str
    forest_type: str
    counts: Mapping[str, int]
    covariates: Mapping[str, float]
    standardized: Mapping[str, float]


@dataclass(frozen=True)
class Standardizer:
    """Mean and sample standard deviation per covariate, fitted once and reused."""

    means: Mapping[str, float]
    stds: Mapping[str, float]

    @classmethod
    def fit(cls, frame: pd.DataFrame, columns: Sequence[str]) -> "Standardizer":
        means: dict[str, float] = {}
        stds: dict[str, float] = {}
        for column in columns:
            values = pd.to_numeric(frame[column], errors="coerce").astype(float)
            mean = float(values.mean())
            std = float(values.std(ddof=1))
            if not math.isfinite(std) or std == 0.0:
                raise DegenerateCovarianceError(
                    f"Covariate '{column}' has zero or undefined standard deviation; "
                    "exclude it for this partition."
                )
            means[column] = mean
            stds[column] = std
        return cls(means=means, stds=stds)

    @property
    def columns(self) -> list[str]:
        return list(self.means)

    def transform(self, frame: pd.DataFrame, *, suffix: str = "_z") -> pd.DataFrame:
        """Return a copy of frame with a z-scored column added per covariate."""

        result = frame.copy()
        for column in self.columns:
            values = pd.to_numeric(result[column], errors="coerce").astype(float)
            result[f"{column}{suffix}"] = (values - self.means[column]) / self.stds[column]
        return result

    def inverse(self, column: str, values: Sequence[float] | np.ndarray) -> np.ndarray:
        """Map standardized values of a covariate back to its raw scale."""

        base = column[:-2] if column.endswith("_z") else column
        if base not in self.means:
            raise KeyError(f"Standardizer was not fitted on '{base}'.")
        return np.asarray(values, dtype=float) * self.stds[base] + self.means[base]


@dataclass(frozen=True)
class PreparedDataset:
    """Analysis table of site-nights plus the scaling used to build it."""

    frame: pd.DataFrame
    scaling: Standardizer
    name: str = "full"
    responses: tuple[str, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.frame)

    def partition(self, name: str) -> "PreparedDataset":
        """Return a year partition sharing this dataset's standardization."""

        if name == "full":
            frame = self.frame
        elif name.startswith("year") and name[4:].isdigit():
            season = int(name[4:])
            keep = (self.frame["BA"] == "before") | (self.frame["post_year"] == season)
            frame = self.frame.loc[keep]
            if not (frame["BA"] == "after").any():
                logger.warning("Partition %s has no post-fire rows", name)
        else:
            raise ValueError(f"Unknown partition '{name}'; expected one of {list(PARTITIONS)}.")
        return PreparedDataset(
            frame=frame.reset_index(drop=True).copy(),
            scaling=self.scaling,
            name=name,
            responses=self.responses,
        )

    def records(self) -> Iterator[SiteNight]:
        """Iterate over typed site-night rows."""

        raw_columns = self.scaling.columns
        for row in self.frame.to_dict(orient="records"):
            yield SiteNight(
                site=str(row[common.SITE_COLUMN]),
                date=row[common.DATE_COLUMN],
                year=int(row["year"]),
                post_year=int(row["post_year"]),
                ba=str(row["BA"]),
                ci=str(row["CI"]),
                visits=int(row["visits"]),
                habitat=str(row["habitat"]),
                forest_type=str(row["forest_type"]),
                counts={name: int(row[name]) for name in self.responses},
                covariates={name: float(row[name]) for name in raw_columns},
                standardized={f"{name}_z": float(row[f"{name}_z"]) for name in raw_columns},
            )


def iter_observations(raw: pd.DataFrame) -> Iterator[Observation]:
    """Iterate over raw rows as typed observations."""

    for row in raw.to_dict(orient="records"):
        yield Observation(
            site=str(row[common.SITE_COLUMN]),
            date=pd.Timestamp(row[common.DATE_COLUMN]).to_pydatetime(),
            species_group=str(row[common.GROUP_COLUMN]),
            count=int(row[common.COUNT_COLUMN]),
            precip=float(row["precip"]),
            temp=float(row["temp"]),
            jday=float(row["jday"]),
            habitat=str(row["habitat"]),
            forest_type=str(row["forest_type"]),
            burn=str(row[common.BURN_COLUMN]),
            fire=str(row[common.FIRE_COLUMN]),
            sunset=None if pd.isna(row.get("sunset")) else str(row["sunset"]),
            sunrise=None if pd.isna(row.get("sunrise")) else str(row["sunrise"]),
        )


def _map_category(series: pd.Series, mapping: Mapping[str, str], column: str) -> pd.Series:
    mapped = series.map(mapping)
    unmapped = series[mapped.isna()]
    if not unmapped.empty:
        values = sorted({"<NA>" if pd.isna(value) else str(value) for value in unmapped})
        raise MalformedCategoryError(
            f"Column '{column}' has values outside {sorted(mapping)}: {', '.join(values)}"
        )
    return mapped.astype(str)


def _validate_observations(frame: pd.DataFrame) -> pd.DataFrame:
    data = frame.copy()
    if data[common.SITE_COLUMN].isna().any():
        raise InvalidObservationError("Observations with a missing site identifier.")
    data[common.DATE_COLUMN] = pd.to_datetime(data[common.DATE_COLUMN], errors="coerce")
    if data[common.DATE_COLUMN].isna().any():
        raise InvalidObservationError("Observations with a missing or unparseable date.")

    counts = pd.to_numeric(data[common.COUNT_COLUMN], errors="coerce")
    bad = counts.isna() | (counts < 0) | (counts != np.floor(counts))
    if bad.any():
        raise InvalidObservationError(
            f"{int(bad.sum())} observations have a missing, negative or non-integer count."
        )
    data[common.COUNT_COLUMN] = counts.astype("int64")
    data[common.SITE_COLUMN] = data[common.SITE_COLUMN].astype(str)
    data[common.GROUP_COLUMN] = data[common.GROUP_COLUMN].astype(str)
    return data


def _pivot_site_nights(data: pd.DataFrame) -> tuple[pd.DataFrame, tuple[str, ...]]:
    keys = [common.SITE_COLUMN, common.DATE_COLUMN]
    counts = data.pivot_table(
        index=keys,
        columns=common.GROUP_COLUMN,
        values=common.COUNT_COLUMN,
        aggfunc="sum",
        fill_value=0,
    )
    counts.columns = [f"{str(group).lower()}_passes" for group in counts.columns]
    counts = counts.astype("int64")
    counts["total_passes"] = counts.sum(axis=1)

    attribute_columns = [
        column
        for column in (
            *common.TIME_COLUMNS,
            *common.WEATHER_COLUMNS,
            *common.SITE_DESCRIPTOR_COLUMNS,
            "BA",
            "CI",
        )
        if column in data.columns
    ]
    attributes = data.groupby(keys, sort=True)[attribute_columns].first()
    nights = attributes.join(counts).reset_index()
    return nights, tuple(counts.columns)


def prepare(
    raw: pd.DataFrame,
    *,
    covariates: Sequence[str] = common.NUMERIC_COVARIATES,
    fire_year: int = common.FIRE_YEAR,
) -> PreparedDataset:
    """Build the full-series PreparedDataset from raw observations.

    Derives the Before/After and Control/Impact factors, pivots species-group
    counts into one row per site-night, joins the per-site visit count and
    z-scores the numeric covariates. The fitted Standardizer travels with the
    dataset so every year partition reuses the full-series scaling.
    """

    data = _validate_observations(raw)
    data["BA"] = _map_category(data[common.FIRE_COLUMN], common.BA_MAPPING, common.FIRE_COLUMN)
    data["CI"] = _map_category(data[common.BURN_COLUMN], common.CI_MAPPING, common.BURN_COLUMN)

    nights, responses = _pivot_site_nights(data)

    nights["year"] = nights[common.DATE_COLUMN].dt.year.astype(int)
    post = nights["BA"] == "after"
    post_years = sorted(nights.loc[post, "year"].unique())
    if post_years and post_years[0] < fire_year:
        logger.warning(
            "Post-fire rows dated %s precede the %s fire", post_years[0], fire_year
        )
    season = {year: rank for rank, year in enumerate(post_years, start=1)}
    nights["post_year"] = np.where(post, nights["year"].map(season), 0).astype(int)

    nights["visits"] = (
        nights.groupby(common.SITE_COLUMN)[common.DATE_COLUMN].transform("size").astype(int)
    )

    scaling = Standardizer.fit(nights, covariates)
    nights = scaling.transform(nights)

    nights["BA"] = pd.Categorical(nights["BA"], categories=list(common.BA_LEVELS))
    nights["CI"] = pd.Categorical(nights["CI"], categories=list(common.CI_LEVELS))
    for column in common.SITE_DESCRIPTOR_COLUMNS:
        if column in nights:
            values = nights[column].astype(str)
            nights[column] = pd.Categorical(values, categories=sorted(values.unique()))

    logger.info(
        "Prepared %d site-nights from %d observations across %d sites",
        len(nights),
        len(raw),
        nights[common.SITE_COLUMN].nunique(),
    )
    return PreparedDataset(frame=nights, scaling=scaling, name="full", responses=responses)
