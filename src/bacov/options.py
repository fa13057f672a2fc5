from __future__ import annotations

import json
import math
import numbers
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

SCHEMA_VERSION = "bacov.covariance_options.v0"

CovarianceParams = Literal["points", "poses", "poses_and_points", "all"]
PointCovarianceMode = Literal["marginal", "conditional"]

_PARAMS: tuple[str, ...] = ("points", "poses", "poses_and_points", "all")
_POINT_COVARIANCE_MODES: tuple[str, ...] = ("marginal", "conditional")


class CovarianceOptionsError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise CovarianceOptionsError(msg)


def _is_real(x: Any) -> bool:
    return isinstance(x, numbers.Real) and not isinstance(x, bool)


def _is_integer(x: Any) -> bool:
    return isinstance(x, numbers.Integral) and not isinstance(x, bool)


@dataclass(frozen=True)
class BACovarianceOptions:
    """
    Which covariance blocks to estimate, and how.

    - `params`: groups to return: "points", "poses", "poses_and_points" or
      "all" (poses, points and every other variable block, e.g. intrinsics).
    - `damping`: added to the diagonal of each 3x3 point block before it is
      eliminated. Zero is only safe when every point is well observed.
      Damping also penalizes moving points, so it can resolve a gauge freedom
      that the caller did not fix. Small values (1e-8) still report an unfixed
      gauge as None; large ones (1e-4 and up on a well-observed scene) return
      covariances whose size scales with 1 / damping.
    - `point_covariance`: "marginal" accounts for the uncertainty of poses and
      other parameters; "conditional" treats them as known (H_pp^-1 only).
    - `eigenvalue_rtol`: a symmetric block is treated as singular when its
      smallest eigenvalue is <= rtol * largest. None uses 1e-12.
    - `point_chunk_size`: points recovered per dense batch.
    """

    params: CovarianceParams = "all"
    damping: float = 1e-8
    point_covariance: PointCovarianceMode = "marginal"
    eigenvalue_rtol: float | None = None
    point_chunk_size: int = 1024

    def __post_init__(self) -> None:
        _require(self.params in _PARAMS, f"params must be one of {list(_PARAMS)}")
        _require(
            _is_real(self.damping) and math.isfinite(self.damping) and self.damping >= 0.0,
            "damping must be a finite number >= 0",
        )
        _require(
            self.point_covariance in _POINT_COVARIANCE_MODES,
            f"point_covariance must be one of {list(_POINT_COVARIANCE_MODES)}",
        )
        if self.eigenvalue_rtol is not None:
            _require(
                _is_real(self.eigenvalue_rtol)
                and math.isfinite(self.eigenvalue_rtol)
                and 0.0 <= self.eigenvalue_rtol < 1.0,
                "eigenvalue_rtol must be in [0, 1)",
            )
        _require(
            _is_integer(self.point_chunk_size) and self.point_chunk_size >= 1, "point_chunk_size must be an integer >= 1"
        )

    @property
    def estimate_point_covs(self) -> bool:
        return self.params in ("points", "poses_and_points", "all")

    @property
    def estimate_pose_covs(self) -> bool:
        return self.params in ("poses", "poses_and_points", "all")

    @property
    def estimate_other_covs(self) -> bool:
        return self.params == "all"


def load_ba_covariance_options(path: Path) -> BACovarianceOptions:
    data = json.loads(path.read_text(encoding="utf-8"))
    return parse_ba_covariance_options(data)


def parse_ba_covariance_options(data: dict[str, Any]) -> BACovarianceOptions:
    schema_version = data.get("schema_version")
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    params = data.get("params", "all")
    _require(isinstance(params, str), "params must be a string")

    damping_raw = data.get("damping", 1e-8)
    _require(_is_real(damping_raw), "damping must be a number")

    point_covariance = data.get("point_covariance", "marginal")
    _require(isinstance(point_covariance, str), "point_covariance must be a string")

    rtol_raw = data.get("eigenvalue_rtol")
    _require(
        rtol_raw is None or _is_real(rtol_raw),
        "eigenvalue_rtol must be a number or null",
    )

    chunk_raw = data.get("point_chunk_size", 1024)
    _require(_is_integer(chunk_raw), "point_chunk_size must be an integer")

    return BACovarianceOptions(
        params=params,  # type: ignore[arg-type]
        damping=float(damping_raw),
        point_covariance=point_covariance,  # type: ignore[arg-type]
        eigenvalue_rtol=None if rtol_raw is None else float(rtol_raw),
        point_chunk_size=int(chunk_raw),
    )
