#  Copyright 2016 Intel Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.

import pytest


def test_indicator_matrix():
    from pcmfit.utils.utils import indicator_matrix
    import numpy as np

    labels = np.array([2, 1, 0, 2, 3, 0])
    Z = indicator_matrix(labels)
    assert Z.shape == (6, 3), "identity_p should skip the zero label"
    assert np.array_equal(Z[0], [0, 1, 0]), (
        "Columns should follow the sorted labels")
    assert np.all(Z[[2, 5]] == 0), "Zero labels should give all-zero rows"
    assert np.all(Z.sum(axis=1)[[0, 1, 3, 4]] == 1), (
        "Each labelled row belongs to exactly one group")

    Z = indicator_matrix(labels, mode='identity')
    assert Z.shape == (6, 4), "identity should keep the zero label"
    assert np.all(Z.sum(axis=1) == 1), "Every row belongs to one group"


def test_indicator_matrix_column_vector():
    from pcmfit.utils.utils import indicator_matrix
    import numpy as np

    Z = indicator_matrix(np.array([[1], [2], [1]]))
    assert Z.shape == (3, 2), "Column vectors should be accepted"


def test_indicator_matrix_unknown_mode():
    from pcmfit.utils.utils import indicator_matrix

    with pytest.raises(ValueError):
        indicator_matrix([1, 2], mode='allpairs')


def test_make_pd():
    from pcmfit.utils.utils import make_pd
    import numpy as np

    G = np.array([[1., 2.], [2., 1.]])
    G_pd = make_pd(G)
    assert np.allclose(G_pd, G_pd.T), "Result should be symmetric"
    assert np.min(np.linalg.eigvalsh(G_pd)) >= 1e-5 - 1e-10, (
        "Eigenvalues should be floored at the threshold")

    G = np.array([[2., 0.5], [0.5, 1.]])
    assert np.allclose(make_pd(G), G), (
        "A positive definite matrix should not change")


def test_make_pd_symmetrizes():
    from pcmfit.utils.utils import make_pd
    import numpy as np

    G = np.array([[2., 1.], [0., 2.]])
    assert np.allclose(make_pd(G), [[2., 0.5], [0.5, 2.]])


def test_trace_ab_trans(seeded_rng):
    from pcmfit.utils.utils import trace_ab_trans
    import numpy as np

    a = np.random.rand(4, 3)
    b = np.random.rand(4, 3)
    assert np.isclose(trace_ab_trans(a, b), np.trace(a @ b.T)), (
        "trace_ab_trans does not match trace(a b')")


def test_is_vector():
    from pcmfit.utils.utils import is_vector
    import numpy as np

    assert is_vector(np.arange(3))
    assert is_vector(np.zeros((3, 1)))
    assert not is_vector(np.zeros((3, 2)))
