"""
DataMatrix v0.3 - Conversion Codes
==================================

Runtime representation conversion for DataMatrix feature vectors.

A conversion string holds one code per external feature. Each code moves its
external element(s) into the internal (working) vector, possibly changing the
number of elements, e.g. an angle becomes a (cos, sin) pair so that distances
respect wrap-around.

Codes:
  .  copy      - unchanged
  L  log       - natural log, inverse exp
  E  exp       - exponential, inverse log
  A  angle     - radians to (cos, sin), inverse atan2

Sections:
  [A] Code Registry
  [B] Parser
  [C] Kernels (numba)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

import numpy as np
import pandas as pd
from numba import njit


class ConversionError(ValueError):
    pass


# ============================================================
# [A] Code Registry
# ============================================================
OP_COPY = 0
OP_LOG = 1
OP_EXP = 2
OP_ANGLE = 3


@dataclass(frozen=True)
class Convert:
    code: str
    name: str
    description: str
    ext_width: int
    int_width: int
    op: int


CONVERTERS: Dict[str, Convert] = {
    c.code: c
    for c in (
        Convert(".", "copy", "Feature passed through unchanged.", 1, 1, OP_COPY),
        Convert("L", "log", "Natural logarithm; the external value must be positive.", 1, 1, OP_LOG),
        Convert("E", "exp", "Exponential; converted back with the natural logarithm.", 1, 1, OP_EXP),
        Convert("A", "angle", "Angle in radians, stored internally as (cos, sin).", 1, 2, OP_ANGLE),
    )
}


def list_conversions() -> pd.DataFrame:
    """Table of the available conversion codes, one row per code."""
    rows = [
        {
            "code": c.code,
            "name": c.name,
            "external": c.ext_width,
            "internal": c.int_width,
            "description": c.description,
        }
        for c in CONVERTERS.values()
    ]
    return pd.DataFrame(rows).set_index("code")


# ============================================================
# [B] Parser
# ============================================================
@dataclass(frozen=True)
class ConversionPlan:
    """
    Ordered list of conversion operations, stored as parallel arrays so the
    kernels can walk it without touching Python objects.

    Attributes
    ----------
    codes : str
        The normalised code string the plan was parsed from.
    ops : np.ndarray
        int8 op id per operation.
    offset_external : np.ndarray
        int32 element offset of each operation in the external vector.
    offset_internal : np.ndarray
        int32 element offset of each operation in the internal vector.
    ext_width, int_width : int
        Total vector lengths on each side.
    """

    codes: str
    ops: np.ndarray
    offset_external: np.ndarray
    offset_internal: np.ndarray
    ext_width: int
    int_width: int

    def __len__(self) -> int:
        return int(self.ops.shape[0])

    @property
    def nbytes(self) -> int:
        return int(self.ops.nbytes + self.offset_external.nbytes + self.offset_internal.nbytes)


def parse_conversion(codes: str) -> ConversionPlan:
    """
    Parse a conversion string into a ConversionPlan.

    Whitespace is ignored. Raises ConversionError on an unknown code or an
    empty string.
    """
    clean = "".join(codes.split())
    if not clean:
        raise ConversionError("Conversion string contains no codes.")

    ops: List[int] = []
    ext_off: List[int] = []
    int_off: List[int] = []
    ext_pos = 0
    int_pos = 0
    for ch in clean:
        conv = CONVERTERS.get(ch)
        if conv is None:
            raise ConversionError(
                f"Unknown conversion code '{ch}'. Valid codes: {''.join(CONVERTERS)}"
            )
        ops.append(conv.op)
        ext_off.append(ext_pos)
        int_off.append(int_pos)
        ext_pos += conv.ext_width
        int_pos += conv.int_width

    return ConversionPlan(
        codes=clean,
        ops=np.asarray(ops, dtype=np.int8),
        offset_external=np.asarray(ext_off, dtype=np.int32),
        offset_internal=np.asarray(int_off, dtype=np.int32),
        ext_width=ext_pos,
        int_width=int_pos,
    )


# ============================================================
# [C] Kernels (numba)
# ============================================================
@njit(cache=True)
def to_internal_kernel(
    ops: np.ndarray,
    offset_external: np.ndarray,
    offset_internal: np.ndarray,
    external: np.ndarray,
    internal: np.ndarray,
) -> None:
    """
    Apply each operation in turn, external -> internal.

    No bounds checking beyond what the plan encodes.
    """
    for k in range(ops.shape[0]):
        op = ops[k]
        e = offset_external[k]
        i = offset_internal[k]
        if op == OP_COPY:
            internal[i] = external[e]
        elif op == OP_LOG:
            internal[i] = np.log(external[e])
        elif op == OP_EXP:
            internal[i] = np.exp(external[e])
        elif op == OP_ANGLE:
            internal[i] = np.cos(external[e])
            internal[i + 1] = np.sin(external[e])


@njit(cache=True)
def to_external_kernel(
    ops: np.ndarray,
    offset_external: np.ndarray,
    offset_internal: np.ndarray,
    internal: np.ndarray,
    external: np.ndarray,
) -> None:
    """Inverse of to_internal_kernel, internal -> external."""
    for k in range(ops.shape[0]):
        op = ops[k]
        e = offset_external[k]
        i = offset_internal[k]
        if op == OP_COPY:
            external[e] = internal[i]
        elif op == OP_LOG:
            external[e] = np.exp(internal[i])
        elif op == OP_EXP:
            external[e] = np.log(internal[i])
        elif op == OP_ANGLE:
            external[e] = np.arctan2(internal[i + 1], internal[i])


def apply_to_internal(plan: ConversionPlan, external: np.ndarray, internal: np.ndarray) -> np.ndarray:
    to_internal_kernel(plan.ops, plan.offset_external, plan.offset_internal, external, internal)
    return internal


def apply_to_external(plan: ConversionPlan, internal: np.ndarray, external: np.ndarray) -> np.ndarray:
    to_external_kernel(plan.ops, plan.offset_external, plan.offset_internal, internal, external)
    return external


__all__ = [
    "Convert",
    "ConversionError",
    "ConversionPlan",
    "CONVERTERS",
    "list_conversions",
    "parse_conversion",
    "apply_to_internal",
    "apply_to_external",
]
