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
import numpy as np
import pytest

from pcmfit.reprsimil.optimize import FitError, minimize, newton_raphson


A = np.array([[3., 1.], [1., 2.]])
x_opt = np.array([1., -2.])


def quadratic(x):
    d = x - x_opt
    return 0.5 * d @ A @ d + 1.0, A @ d, A


def singular(x):
    raise np.linalg.LinAlgError("Matrix is not positive definite")


def test_newton_raphson_quadratic():
    res = newton_raphson(np.zeros(2), quadratic)
    assert res.success, "Newton-Raphson should converge on a quadratic"
    assert res.status == 0
    assert res.method == 'NR'
    assert np.allclose(res.x, x_opt, atol=1e-3)
    assert np.isclose(res.fun, 1.0, atol=1e-4)
    assert res.nit > 0


def test_newton_raphson_failure():
    res = newton_raphson(np.zeros(2), singular)
    assert not res.success, "Failures should be reported, not raised"
    assert res.status == 2
    assert 'starting point' in res.message


def test_newton_raphson_backs_up():
    def fcn(x):
        # worse everywhere except close to the start
        if np.linalg.norm(x) > 0.5:
            raise np.linalg.LinAlgError("outside")
        return quadratic(x)

    res = newton_raphson(np.zeros(2), fcn, max_iter=200)
    assert res.success
    assert res.reg > 1e-3, "Regularization should grow after bad steps"
    assert np.linalg.norm(res.x) <= 0.5


def test_newton_raphson_max_iter():
    res = newton_raphson(np.zeros(2), quadratic, max_iter=1, thres=0)
    assert res.success
    assert res.status == 1
    assert res.nit == 1


def test_minimize_quadratic():
    res = minimize(np.zeros(2), quadratic, max_iter=100)
    assert res.method == 'minimize'
    assert np.allclose(res.x, x_opt, atol=1e-4)
    assert np.isclose(res.fun, 1.0)


def test_minimize_failure():
    with pytest.raises(FitError):
        minimize(np.zeros(2), singular)


def overflowing_likelihood():
    from pcmfit.reprsimil.likelihood import likelihood_group
    from pcmfit.utils.utils import indicator_matrix

    rng = np.random.RandomState(0)
    Y = rng.randn(6, 10)
    Z = indicator_matrix(np.tile([1, 2], 3))
    B = indicator_matrix(np.repeat([1, 2, 3], 2))

    def fcn(x):
        return likelihood_group(x, [Y @ Y.T], np.eye(2), [Z], [10],
                                B=[B])
    return fcn


def test_newton_raphson_overflow():
    fcn = overflowing_likelihood()
    res = newton_raphson(np.array([800., 0., 0.]), fcn)
    assert not res.success, (
        "An overflowing covariance should be reported as a failure")
    assert res.status == 2


def test_minimize_overflow():
    fcn = overflowing_likelihood()
    with pytest.raises(FitError):
        minimize(np.array([800., 0., 0.]), fcn)
