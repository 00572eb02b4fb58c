"""Tests for the conversion code parser and kernels."""

from __future__ import annotations

import numpy as np
import pytest

from datamatrix_convert import (
    CONVERTERS,
    ConversionError,
    apply_to_external,
    apply_to_internal,
    list_conversions,
    parse_conversion,
)


def test_plan_offsets():
    plan = parse_conversion("A.A")
    assert len(plan) == 3
    assert plan.offset_external.tolist() == [0, 1, 2]
    assert plan.offset_internal.tolist() == [0, 2, 3]
    assert plan.ext_width == 3
    assert plan.int_width == 5


def test_whitespace_ignored():
    plan = parse_conversion(" . L\tE ")
    assert plan.codes == ".LE"
    assert plan.ext_width == plan.int_width == 3


@pytest.mark.parametrize("codes", ["", "   ", ".x."])
def test_bad_codes(codes):
    with pytest.raises(ConversionError):
        parse_conversion(codes)


def test_kernels_invert_each_other():
    plan = parse_conversion(".LEA")
    external = np.array([-3.0, 2.5, 0.25, 2.0], dtype=np.float64)
    internal = apply_to_internal(plan, external, np.empty(plan.int_width))
    np.testing.assert_allclose(
        internal, [-3.0, np.log(2.5), np.exp(0.25), np.cos(2.0), np.sin(2.0)]
    )
    back = apply_to_external(plan, internal, np.empty(plan.ext_width))
    np.testing.assert_allclose(back, external)


def test_angle_wraps():
    plan = parse_conversion("A")
    internal = apply_to_internal(plan, np.array([3.0 * np.pi / 2]), np.empty(2))
    back = apply_to_external(plan, internal, np.empty(1))
    np.testing.assert_allclose(back, [-np.pi / 2])


def test_list_conversions():
    table = list_conversions()
    assert set(table.index) == set(CONVERTERS)
    assert table.loc["A", "internal"] == 2
    assert table.loc[".", "name"] == "copy"
