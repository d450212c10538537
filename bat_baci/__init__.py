"""GLMM analysis of bat activity at burned and unburned sites around a 2017 wildfire."""

from . import common, diagnostics, effects, errors, glmm, pipeline, preparation, selection  # noqa: F401

__all__ = [
    "common",
    "diagnostics",
    "effects",
    "errors",
    "glmm",
    "pipeline",
    "preparation",
    "selection",
]
