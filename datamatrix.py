"""
DataMatrix v0.3 --- Exemplar/Feature View over N-dimensional Arrays
===================================================================

Wraps a numpy array so an algorithm can treat it as a matrix of exemplars by
features, whatever its rank. Every axis is tagged:

- DATA:    indexes exemplars
- DUAL:    indexes exemplars, and the position along it is also a feature
- FEATURE: indexes the elements of each exemplar's feature vector

Exemplars are addressed by a single integer, row-major over the DATA and DUAL
axes. Feature vectors always hold the dual positions first, then the feature
elements in row-major order. One feature element can be set aside as a
per-exemplar weight, which drives weighted draws.

A conversion string (see datamatrix_convert) optionally defines an internal
working representation that differs from the stored one.

The array is borrowed, never copied or written to. Returned feature vectors
live in scratch storage owned by the DataMatrix and are overwritten by the
next call; copy them if you need to keep them. Not thread safe.

Sections:
  [A] Exceptions & Globals
  [B] Dimension Types & Element Decoding
  [C] Sampling Helpers
  [D] DataMatrix API
  [E] Conversion
  [F] Config / Inspection
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields as dc_fields
from enum import IntEnum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import warnings
import numpy as np
import pandas as pd

from datamatrix_convert import (
    ConversionError,
    ConversionPlan,
    apply_to_external,
    apply_to_internal,
    parse_conversion,
)


# ============================================================
# [A] Exceptions & Globals
# ============================================================
class DataMatrixError(Exception):
    pass

class ConfigError(DataMatrixError):
    pass

class PreconditionError(DataMatrixError, IndexError):
    pass


_VALID_DTYPES = {"float32": np.float32, "float64": np.float64}


# ============================================================
# [B] Dimension Types & Element Decoding
# ============================================================
class DimType(IntEnum):
    DATA = 0
    DUAL = 1
    FEATURE = 2


_DIM_NAMES = {
    "data": DimType.DATA,
    "d": DimType.DATA,
    "dual": DimType.DUAL,
    "u": DimType.DUAL,
    "feature": DimType.FEATURE,
    "f": DimType.FEATURE,
}


def _coerce_dim_type(tag: Union[DimType, int, str]) -> DimType:
    if isinstance(tag, str):
        dt = _DIM_NAMES.get(tag.strip().lower())
        if dt is None:
            raise ConfigError(
                f"Unknown dimension type '{tag}'. Must be one of {sorted(_DIM_NAMES)}."
            )
        return dt
    try:
        return DimType(int(tag))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Unknown dimension type {tag!r}") from e


# Writes decoded elements into a float scratch slice.
ToFloat = Callable[[np.ndarray, np.ndarray], None]


def _float_to_float(values: np.ndarray, out: np.ndarray) -> None:
    np.copyto(out, values, casting="same_kind")


def _int_to_float(values: np.ndarray, out: np.ndarray) -> None:
    np.copyto(out, values, casting="unsafe")


def _bool_to_float(values: np.ndarray, out: np.ndarray) -> None:
    np.copyto(out, values.view(np.uint8), casting="unsafe")


_KIND_TO_FUNC: Dict[str, ToFloat] = {
    "f": _float_to_float,
    "i": _int_to_float,
    "u": _int_to_float,
    "b": _bool_to_float,
}


def kind_to_func(dtype: np.dtype) -> ToFloat:
    """
    Select the element decoder for an array dtype.

    Resolved once when an array is bound rather than per element.

    Raises
    ------
    ConfigError
        For dtypes that do not hold plain real numbers (complex, object,
        strings, datetimes, records).
    """
    dtype = np.dtype(dtype)
    func = _KIND_TO_FUNC.get(dtype.kind)
    if func is None:
        raise ConfigError(f"Unsupported array dtype {dtype}; expected real numeric or bool.")
    return func


# ============================================================
# [C] Sampling Helpers
# ============================================================
def philox_rng(seed: Optional[int] = None) -> np.random.Generator:
    """Generator backed by the counter-based Philox bit generator."""
    return np.random.Generator(np.random.Philox(seed))


def search_cumulative(cum: np.ndarray, target: float) -> int:
    """
    Binary search an inclusive cumulative weight array.

    Returns the smallest index whose cumulative value is >= target, clamped
    to the last index so a target at the total still lands on an exemplar.
    """
    idx = int(np.searchsorted(cum, target, side="left"))
    return min(idx, cum.shape[0] - 1)


@dataclass(frozen=True)
class Converted:
    """
    Result of a representation conversion.

    borrowed is True when no conversion is configured and values is the very
    array that was passed in (modified in place by the scale), not a new one.
    """

    values: np.ndarray
    borrowed: bool


# ============================================================
# [D] DataMatrix API
# ============================================================
@dataclass
class DataMatrix:
    # ---- Config ----
    dtype: str = "float32"
    checked: bool = True
    verbose: bool = False

    # ---- Binding ----
    array_: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    view_: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    dim_types_: Optional[np.ndarray] = field(default=None, init=False)
    exemplar_shape_: Tuple[int, ...] = field(default=(), init=False)
    feature_shape_: Tuple[int, ...] = field(default=(), init=False)

    weight_index_: Optional[int] = field(default=None, init=False)
    weight_scale_: float = field(default=1.0, init=False)

    # ---- Derived counts ----
    exemplars_: int = field(default=0, init=False)
    dual_features_: int = field(default=0, init=False)
    feature_count_: int = field(default=0, init=False)
    ext_features_: int = field(default=0, init=False)
    features_: int = field(default=0, init=False)

    # ---- Owned buffers ----
    scale_: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    fv_: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    fv_conv_: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    conversion_: Optional[ConversionPlan] = field(default=None, init=False, repr=False)
    weight_cum_: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    feat_indices_: Optional[np.ndarray] = field(default=None, init=False, repr=False)

    _to_float: Optional[ToFloat] = field(default=None, init=False, repr=False)
    _dual_slots: Tuple[int, ...] = field(default=(), init=False, repr=False)
    _weight_pos: Tuple[int, ...] = field(default=(), init=False, repr=False)

    def __post_init__(self):
        if self.dtype not in _VALID_DTYPES:
            raise ConfigError(
                f"dtype must be one of {sorted(_VALID_DTYPES)}, got '{self.dtype}'"
            )

    # --------------------------
    # Binding
    # --------------------------
    def set(
        self,
        array: np.ndarray,
        dim_types: Iterable[Union[DimType, int, str]],
        weight_index: Optional[int] = None,
        conversion: Optional[str] = None,
    ) -> "DataMatrix":
        """
        Bind an array and derive the exemplar/feature layout.

        Parameters
        ----------
        array : np.ndarray
            Source data. Borrowed; must outlive its use through this object.
        dim_types : iterable
            One tag per axis: DimType, its int value, or 'data'/'dual'/'feature'.
        weight_index : int, optional
            Index into the row-major flattened FEATURE elements of the element
            holding each exemplar's weight. None or negative for unweighted.
            The weight element is removed from the returned feature vectors.
        conversion : str, optional
            Conversion codes, one per external feature, defining the internal
            representation. The codes are not checked against the data.

        Returns
        -------
        self

        Raises
        ------
        ConfigError
            If the binding is inconsistent; the object is left unbound.
        """
        self.reset()

        arr = array if isinstance(array, np.ndarray) else np.asarray(array)
        tags = [_coerce_dim_type(t) for t in dim_types]
        if len(tags) != arr.ndim:
            raise ConfigError(
                f"Got {len(tags)} dimension types for an array with {arr.ndim} dimensions."
            )
        to_float = kind_to_func(arr.dtype)

        ex_axes = [i for i, t in enumerate(tags) if t != DimType.FEATURE]
        feat_axes = [i for i, t in enumerate(tags) if t == DimType.FEATURE]
        if not ex_axes:
            raise ConfigError("At least one dimension must be DATA or DUAL.")

        exemplar_shape = tuple(int(arr.shape[i]) for i in ex_axes)
        feature_shape = tuple(int(arr.shape[i]) for i in feat_axes)
        exemplars = int(np.prod(exemplar_shape, dtype=np.int64))
        if exemplars == 0:
            raise ConfigError("Array has no exemplars.")

        # No FEATURE axis leaves the element itself as the single feature.
        n_feat = int(np.prod(feature_shape, dtype=np.int64))
        if n_feat == 0:
            raise ConfigError("FEATURE dimensions must not be empty.")

        dual_slots = tuple(k for k, i in enumerate(ex_axes) if tags[i] == DimType.DUAL)

        if weight_index is not None and int(weight_index) >= 0:
            weight_index = int(weight_index)
            if weight_index >= n_feat:
                raise ConfigError(
                    f"weight_index {weight_index} out of range for {n_feat} feature elements."
                )
            if feature_shape:
                weight_pos = tuple(int(p) for p in np.unravel_index(weight_index, feature_shape))
            else:
                weight_pos = ()
            feat_indices = np.delete(np.arange(n_feat, dtype=np.intp), weight_index)
        else:
            weight_index = None
            weight_pos = ()
            feat_indices = np.arange(n_feat, dtype=np.intp)

        feature_count = int(feat_indices.shape[0])
        ext_features = len(dual_slots) + feature_count

        plan = None
        if conversion is not None:
            try:
                plan = parse_conversion(conversion)
            except ConversionError as e:
                raise ConfigError(str(e)) from e
            if plan.ext_width != ext_features:
                raise ConfigError(
                    f"Conversion '{plan.codes}' covers {plan.ext_width} features, "
                    f"but the data matrix has {ext_features}."
                )

        np_dtype = _VALID_DTYPES[self.dtype]

        self.array_ = arr
        self.view_ = arr.transpose(ex_axes + feat_axes)
        self.dim_types_ = np.asarray([int(t) for t in tags], dtype=np.int8)
        self.exemplar_shape_ = exemplar_shape
        self.feature_shape_ = feature_shape
        self.weight_index_ = weight_index
        self.weight_scale_ = 1.0

        self.exemplars_ = exemplars
        self.dual_features_ = len(dual_slots)
        self.feature_count_ = feature_count
        self.ext_features_ = ext_features
        self.features_ = plan.int_width if plan is not None else ext_features

        self.scale_ = np.ones(ext_features, dtype=np_dtype)
        self.fv_ = np.empty(ext_features, dtype=np_dtype)
        self.fv_conv_ = np.empty(plan.int_width, dtype=np_dtype) if plan is not None else None
        self.conversion_ = plan
        self.weight_cum_ = None
        self.feat_indices_ = feat_indices

        self._to_float = to_float
        self._dual_slots = dual_slots
        self._weight_pos = weight_pos

        if self.verbose:
            print(
                f"DataMatrix: {exemplars} exemplars x {ext_features} features "
                f"({self.dual_features_} dual), internal width {self.features_}"
            )
            print(f"  weight_index: {weight_index if weight_index is not None else 'none'}")
            print(f"  conversion: {plan.codes if plan is not None else 'none'}")
        return self

    def reset(self) -> None:
        """Drop the bound array and release every owned buffer."""
        for f in dc_fields(self):
            if not f.init:
                setattr(self, f.name, f.default)

    def _require_bound(self) -> None:
        if self.array_ is None:
            raise RuntimeError("DataMatrix not set. Call set() first.")

    # --------------------------
    # Counts
    # --------------------------
    def exemplars(self) -> int:
        return self.exemplars_

    def features(self) -> int:
        """Length of the vectors returned by fv(), after conversion."""
        return self.features_

    def ext_features(self) -> int:
        """Length of the vectors returned by ext_fv(), before conversion."""
        return self.ext_features_

    def dual_features(self) -> int:
        return self.dual_features_

    # --------------------------
    # Scale & weight
    # --------------------------
    def set_scale(self, scale: Union[np.ndarray, List[float]], weight_scale: float = 1.0) -> None:
        """
        Set the per-feature multipliers and the weight multiplier.

        scale must have one entry per external feature (ext_features()), dual
        positions included. If a weight feature is configured the cumulative
        weight cache used by draw() is rebuilt here, with this weight_scale.
        """
        self._require_bound()
        s = np.asarray(scale, dtype=_VALID_DTYPES[self.dtype]).ravel()
        if s.shape[0] != self.ext_features_:
            raise ConfigError(
                f"Scale has length {s.shape[0]} but the data matrix has "
                f"{self.ext_features_} features."
            )
        if np.any(s == 0.0):
            warnings.warn("Scale contains zeros; to_ext() will divide by zero for those features.")

        # Validate the weights before touching any state.
        cum = None
        if self.weight_index_ is not None:
            cum = self._weight_cum(float(weight_scale))
        self.scale_ = s.copy()
        self.weight_scale_ = float(weight_scale)
        self.weight_cum_ = cum

    def _weight_cum(self, weight_scale: float) -> np.ndarray:
        w = np.asarray(self.view_[(Ellipsis,) + self._weight_pos], dtype=np.float64).reshape(-1)
        w = w * weight_scale
        if not np.all(np.isfinite(w)):
            raise ConfigError("Exemplar weights must be finite.")
        if np.any(w < 0.0):
            raise ConfigError("Exemplar weights must be non-negative.")

        cum = np.cumsum(w)
        if cum[-1] <= 0.0:
            warnings.warn("Total exemplar weight is zero; weighted draws are undefined.")
        return cum

    # --------------------------
    # Feature extraction
    # --------------------------
    def _check_index(self, index: int) -> None:
        if self.checked and not 0 <= index < self.exemplars_:
            raise PreconditionError(
                f"Exemplar index {index} out of range [0, {self.exemplars_})."
            )

    def ext_fv(self, index: int) -> Tuple[np.ndarray, float]:
        """
        Feature vector of one exemplar in the external representation, without
        conversion or scaling.

        Returns
        -------
        (vector, weight)
            vector is scratch storage overwritten by the next ext_fv()/fv()
            call. weight is the weight feature times weight_scale, or 1.0 when
            no weight feature is configured.
        """
        self._require_bound()
        self._check_index(index)

        pos = np.unravel_index(index, self.exemplar_shape_)
        out = self.fv_
        d = self.dual_features_
        for k, slot in enumerate(self._dual_slots):
            out[k] = pos[slot]

        block = self.view_[pos + (Ellipsis,)]
        self._to_float(block.flat[self.feat_indices_], out[d:])

        if self.weight_index_ is None:
            return out, 1.0
        weight = float(block[self._weight_pos]) * self.weight_scale_
        return out, weight

    def fv(self, index: int) -> Tuple[np.ndarray, float]:
        """
        Feature vector of one exemplar in the internal representation: scaled,
        then converted if a conversion is configured.

        Same scratch and weight semantics as ext_fv().
        """
        out, weight = self.ext_fv(index)
        out *= self.scale_
        if self.conversion_ is None:
            return out, weight
        apply_to_internal(self.conversion_, out, self.fv_conv_)
        return self.fv_conv_, weight

    # --------------------------
    # Sampling
    # --------------------------
    def draw(self, rng: np.random.Generator) -> int:
        """
        Draw a random exemplar index, weighted if a weight feature is set.

        Uses exactly one value from rng. The weighting is whatever was in force
        at the last set_scale() call.
        """
        self._require_bound()
        if self.weight_index_ is None:
            return int(rng.integers(0, self.exemplars_))

        if self.weight_cum_ is None:
            raise ConfigError("Weighted draw requires set_scale() to build the weight cache.")
        total = float(self.weight_cum_[-1])
        if self.checked and not total > 0.0:
            raise PreconditionError("Cannot draw: total exemplar weight is zero.")
        return search_cumulative(self.weight_cum_, rng.random() * total)

    # ============================================================
    # [E] Conversion
    # ============================================================
    def _check_length(self, vec: np.ndarray, expected: int, what: str) -> None:
        if self.checked and vec.shape[0] != expected:
            raise PreconditionError(f"{what} vector has length {vec.shape[0]}, expected {expected}.")

    def to_int(self, external: np.ndarray, internal: Optional[np.ndarray] = None) -> Converted:
        """
        Convert an external vector to the internal representation.

        Multiplies external by the scale in place, so treat it as consumed.
        Without a conversion the result borrows external itself and internal
        is ignored (None is fine). Otherwise the result is written to internal,
        allocated if not given.
        """
        self._require_bound()
        self._check_length(external, self.ext_features_, "External")
        external *= self.scale_
        if self.conversion_ is None:
            return Converted(external, borrowed=True)

        if internal is None:
            internal = np.empty(self.features_, dtype=_VALID_DTYPES[self.dtype])
        self._check_length(internal, self.features_, "Internal")
        apply_to_internal(self.conversion_, external, internal)
        return Converted(internal, borrowed=False)

    def to_ext(self, internal: np.ndarray, external: Optional[np.ndarray] = None) -> Converted:
        """Inverse of to_int(): undo the conversion, then divide by the scale."""
        self._require_bound()
        self._check_length(internal, self.features_, "Internal")
        if self.conversion_ is None:
            internal /= self.scale_
            return Converted(internal, borrowed=True)

        if external is None:
            external = np.empty(self.ext_features_, dtype=_VALID_DTYPES[self.dtype])
        self._check_length(external, self.ext_features_, "External")
        apply_to_external(self.conversion_, internal, external)
        external /= self.scale_
        return Converted(external, borrowed=False)

    # --------------------------
    # Footprint
    # --------------------------
    def byte_size(self) -> int:
        """Bytes held by buffers this object owns; the bound array is excluded."""
        total = 0
        for arr in (
            self.dim_types_,
            self.scale_,
            self.fv_,
            self.fv_conv_,
            self.weight_cum_,
            self.feat_indices_,
        ):
            if arr is not None:
                total += arr.nbytes
        if self.conversion_ is not None:
            total += self.conversion_.nbytes
        return int(total)

    # ============================================================
    # [F] Config / Inspection
    # ============================================================
    def to_frame(self, internal: bool = True) -> pd.DataFrame:
        """
        Materialise every exemplar's feature vector as a DataFrame.

        One row per exemplar in index order, plus a 'weight' column. Meant for
        inspection of small matrices; it copies everything.
        """
        self._require_bound()
        n = self.exemplars_
        width = self.features_ if internal else self.ext_features_
        X = np.empty((n, width), dtype=_VALID_DTYPES[self.dtype])
        weights = np.empty(n, dtype=np.float64)
        fetch = self.fv if internal else self.ext_fv
        for i in range(n):
            vec, weights[i] = fetch(i)
            X[i] = vec

        if internal and self.conversion_ is not None:
            columns = [f"internal_{k}" for k in range(width)]
        else:
            columns = [f"dual_{k}" for k in range(self.dual_features_)]
            columns += [f"feature_{k}" for k in range(self.feature_count_)]
        df = pd.DataFrame(X, columns=columns)
        df["weight"] = weights
        return df

    _CONFIG_KEYS = ("dtype", "checked", "verbose")

    def to_config(self) -> Dict:
        """Plain dict of the settings, tagged with the format version."""
        return dict(self.get_params(), version="0.3")

    @classmethod
    def from_config(cls, cfg: Dict) -> "DataMatrix":
        """Build an unbound DataMatrix from to_config() output; unknown keys are ignored."""
        known = {k: cfg[k] for k in cls._CONFIG_KEYS if k in cfg}
        try:
            return cls(**known)
        except TypeError as e:
            raise ConfigError(str(e)) from e

    def get_params(self, deep: bool = True) -> Dict:
        return {k: getattr(self, k) for k in self._CONFIG_KEYS}

    def set_params(self, **params):
        """
        Update settings in place.

        Changing dtype drops the current binding, since the owned buffers are
        allocated in the old dtype; call set() again afterwards.
        """
        unknown = sorted(set(params) - set(self._CONFIG_KEYS))
        if unknown:
            raise ValueError(f"Unknown parameter(s) {unknown}")
        if "dtype" in params and params["dtype"] not in _VALID_DTYPES:
            raise ConfigError(
                f"dtype must be one of {sorted(_VALID_DTYPES)}, got '{params['dtype']}'"
            )
        rebind = "dtype" in params and params["dtype"] != self.dtype
        for k, v in params.items():
            setattr(self, k, v)
        if rebind:
            self.reset()
        return self


__all__ = [
    "DataMatrix",
    "DimType",
    "Converted",
    "kind_to_func",
    "philox_rng",
    "search_cumulative",
    "DataMatrixError",
    "ConfigError",
    "PreconditionError",
]
