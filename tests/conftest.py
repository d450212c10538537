import numpy as np
import pandas as pd
import pytest

from bat_baci import glmm, preparation

SMALL_TERMS = ("BA", "CI", "temp_z")
SMALL_INTERACTIONS = (("BA", "CI"),)


def make_raw_observations(
    *,
    seed: int = 7,
    n_sites: int = 8,
    years: tuple[int, ...] = (2016, 2018, 2019, 2020),
    baci_effect: float = -0.7,
) -> pd.DataFrame:
    """Simulate site-night bat passes for two species groups in a BACI layout."""

    rng = np.random.default_rng(seed)
    site_effects = rng.normal(0.0, 0.4, size=n_sites)
    size = 2.0
    rows = []
    for site_idx in range(n_sites):
        site = f"S{site_idx + 1:02d}"
        burned = site_idx % 2 == 0
        habitat = "riparian" if site_idx % 4 < 2 else "upland"
        forest_type = "conifer" if site_idx % 3 else "mixed"
        nights = 4 + site_idx % 3
        for year in years:
            after = year > 2017
            jdays = rng.choice(np.arange(150, 250), size=nights, replace=False)
            for jday in sorted(jdays):
                date = pd.Timestamp(year=year, month=1, day=1) + pd.Timedelta(days=int(jday) - 1)
                temp = rng.normal(14.0, 3.0)
                precip = rng.gamma(1.0, 2.0)
                for group, base in (("LowF", 1.2), ("HighF", 1.8)):
                    eta = (
                        base
                        + 0.3 * after
                        + 0.2 * burned
                        + baci_effect * (after and burned)
                        + 0.15 * (temp - 14.0) / 3.0
                        + site_effects[site_idx]
                    )
                    mu = np.exp(eta)
                    count = rng.negative_binomial(size, size / (size + mu))
                    rows.append(
                        {
                            "site": site,
                            "date": date.strftime("%Y-%m-%d"),
                            "sunset": "20:45",
                            "sunrise": "05:30",
                            "species_group": group,
                            "count": int(count),
                            "precip": round(float(precip), 2),
                            "temp": round(float(temp), 2),
                            "jday": int(jday),
                            "habitat": habitat,
                            "forest_type": forest_type,
                            "burn": "Burn" if burned else "Unburn",
                            "fire": "Post" if after else "Pre",
                        }
                    )
    return pd.DataFrame.from_records(rows)


@pytest.fixture()
def raw_observations() -> pd.DataFrame:
    return make_raw_observations()


@pytest.fixture(scope="session")
def prepared_dataset() -> preparation.PreparedDataset:
    return preparation.prepare(make_raw_observations())


@pytest.fixture(scope="session")
def baci_spec() -> glmm.ModelSpec:
    return glmm.ModelSpec(
        response="total_passes",
        terms=SMALL_TERMS,
        interactions=SMALL_INTERACTIONS,
    )


@pytest.fixture(scope="session")
def fitted_model(prepared_dataset, baci_spec) -> glmm.FittedModel:
    return glmm.fit_spec(baci_spec, prepared_dataset)
