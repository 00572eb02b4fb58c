from __future__ import annotations

import numpy as np
import pytest

from datamatrix import DataMatrix


@pytest.fixture
def table() -> np.ndarray:
    # 4 exemplars x 3 features, the middle feature doubles as a weight.
    return np.array(
        [
            [1.0, 1.0, 10.0],
            [2.0, 2.0, 20.0],
            [3.0, 3.0, 30.0],
            [4.0, 4.0, 40.0],
        ],
        dtype=np.float64,
    )


@pytest.fixture
def dm() -> DataMatrix:
    return DataMatrix()
