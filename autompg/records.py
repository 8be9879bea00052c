"""
Typed record for one cleaned car model-year, and the derived-field functions.

The derived-field functions operate on numpy arrays or pandas Series so the
cleaner can apply them column-wise; CarRecord applies the same functions to
scalars.
"""

from dataclasses import dataclass, fields
from typing import List

import numpy as np
import pandas as pd

# Cleaned column dtypes, in record order.
RECORD_DTYPES: dict[str, str] = {
    "mpg": "float64",
    "cylinders": "int64",
    "displacement": "float64",
    "horsepower": "float64",
    "weight": "float64",
    "acceleration": "float64",
    "model_year": "int64",
    "car_name": "object",
}

DERIVED_COLUMNS: tuple[str, ...] = (
    "log_horsepower",
    "horsepower_per_cylinder",
    "horsepower_per_weight",
    "weight_per_cylinder",
    "displacement_sq",
)


def log_horsepower(horsepower):
    return np.log(horsepower)


def horsepower_per_cylinder(horsepower, cylinders):
    return horsepower / cylinders


def horsepower_per_weight(horsepower, weight):
    return horsepower / weight


def weight_per_cylinder(weight, cylinders):
    return weight / cylinders


def displacement_sq(displacement):
    return displacement**2


def derive_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of df with DERIVED_COLUMNS appended. Inputs must be non-null numerics."""
    return df.assign(
        log_horsepower=lambda d: log_horsepower(d["horsepower"]),
        horsepower_per_cylinder=lambda d: horsepower_per_cylinder(
            d["horsepower"], d["cylinders"]
        ),
        horsepower_per_weight=lambda d: horsepower_per_weight(
            d["horsepower"], d["weight"]
        ),
        weight_per_cylinder=lambda d: weight_per_cylinder(d["weight"], d["cylinders"]),
        displacement_sq=lambda d: displacement_sq(d["displacement"]),
    )


@dataclass(frozen=True)
class CarRecord:
    car_name: str
    model_year: int
    mpg: float
    cylinders: int
    displacement: float
    horsepower: float
    weight: float
    acceleration: float

    def __post_init__(self) -> None:
        # log and per-unit derived fields are undefined otherwise
        for name in ("cylinders", "horsepower", "weight"):
            value = getattr(self, name)
            if not value > 0:
                raise ValueError(
                    f"{name} must be positive for '{self.car_name}' ({self.model_year}), got {value}"
                )

    @property
    def log_horsepower(self) -> float:
        return float(log_horsepower(self.horsepower))

    @property
    def horsepower_per_cylinder(self) -> float:
        return horsepower_per_cylinder(self.horsepower, self.cylinders)

    @property
    def horsepower_per_weight(self) -> float:
        return horsepower_per_weight(self.horsepower, self.weight)

    @property
    def weight_per_cylinder(self) -> float:
        return weight_per_cylinder(self.weight, self.cylinders)

    @property
    def displacement_sq(self) -> float:
        return displacement_sq(self.displacement)


def records_from_frame(df: pd.DataFrame) -> List[CarRecord]:
    """
    Convert a cleaned frame into CarRecord instances (row order preserved).

    Raises ValueError for missing columns or a row that fails CarRecord validation.
    """
    names = [f.name for f in fields(CarRecord)]
    missing = [n for n in names if n not in df.columns]
    if missing:
        raise ValueError(f"Missing record columns: {', '.join(missing)}")
    out: List[CarRecord] = []
    for row in df.loc[:, names].itertuples(index=False):
        out.append(
            CarRecord(
                car_name=str(row.car_name),
                model_year=int(row.model_year),
                mpg=float(row.mpg),
                cylinders=int(row.cylinders),
                displacement=float(row.displacement),
                horsepower=float(row.horsepower),
                weight=float(row.weight),
                acceleration=float(row.acceleration),
            )
        )
    return out
