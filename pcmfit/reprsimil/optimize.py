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
"""Optimizers for the likelihood of pattern component models

    Both optimizers take an objective returning
    (negative log-likelihood, gradient, expected Hessian) and return a
    scipy.optimize.OptimizeResult. `newton_raphson` reports numerical
    trouble through `success`; `minimize` raises `FitError`.
"""

import logging

import numpy as np
import scipy.optimize

__all__ = [
    "FitError",
    "minimize",
    "newton_raphson",
]

logger = logging.getLogger(__name__)


class FitError(RuntimeError):
    """The likelihood could not be optimized."""
    pass


def minimize(x0, fcn, max_iter=1000):
    """Quasi-Newton minimization with line search (L-BFGS-B)

    Parameters
    ----------
    x0: 1D array
        Starting values.

    fcn: callable
        fcn(x) returns the negative log-likelihood and its gradient as
        the first two outputs.

    max_iter: int
        Maximum number of iterations.

    Returns
    -------
    res: scipy.optimize.OptimizeResult
        With the additional field `method` set to 'minimize'.

    Raises
    ------
    FitError
        If the likelihood cannot be evaluated or the optimum is not
        finite.
    """
    x0 = np.asarray(x0, dtype=float).ravel()

    def fun(x):
        out = fcn(x)
        return out[0], out[1]

    try:
        res = scipy.optimize.minimize(fun, x0, jac=True, method='L-BFGS-B',
                                      options={'maxiter': max_iter})
    except np.linalg.LinAlgError as err:
        raise FitError("Likelihood evaluation failed: {}".format(err)) \
            from err
    if not np.isfinite(res.fun) or not np.all(np.isfinite(res.x)):
        raise FitError("Minimization ended at a non-finite point: "
                       "{}".format(res.message))
    if not res.success:
        logger.debug('minimize stopped after {} iterations: {}'.format(
            res.nit, res.message))
    res.method = 'minimize'
    return res


def newton_raphson(x0, fcn, max_iter=80, thres=1e-4, reg=1e-3):
    """Newton-Raphson on the expected Hessian with adaptive regularization

    A step that worsens the likelihood is discarded and the
    regularization of the Hessian is increased tenfold, a successful step
    decreases it tenfold. The iteration stops when the likelihood
    improves by less than `thres`.

    Parameters
    ----------
    x0: 1D array
        Starting values.

    fcn: callable
        fcn(x) returns the negative log-likelihood, its gradient and the
        expected Hessian.

    max_iter: int
        Maximum number of likelihood evaluations.

    thres: float
        Convergence threshold on the change in log-likelihood.

    reg: float
        Initial regularization added to the diagonal of the Hessian.

    Returns
    -------
    res: scipy.optimize.OptimizeResult
        `success` is False if the likelihood could not be evaluated at
        the starting point, a step could not be computed, or the
        regularization grew without bound. `status` is 0 on convergence,
        1 when `max_iter` was reached and 2 on failure. Also carries
        `reg` (final regularization) and `method` ('NR').
    """
    theta = np.asarray(x0, dtype=float).ravel().copy()
    n = theta.size

    def result(success, status, message, nl, nit):
        return scipy.optimize.OptimizeResult(
            x=theta, fun=nl, nit=nit, success=success, status=status,
            message=message, reg=reg, method='NR')

    try:
        nl, dnl, d2nl = fcn(theta)
    except np.linalg.LinAlgError as err:
        return result(False, 2, "Likelihood evaluation failed at the "
                      "starting point: {}".format(err), np.nan, 0)
    if not np.isfinite(nl):
        return result(False, 2, "Non-finite likelihood at the starting "
                      "point.", nl, 0)

    for it in range(1, max_iter + 1):
        try:
            step = np.linalg.solve(d2nl + reg * np.eye(n), -dnl)
        except np.linalg.LinAlgError as err:
            return result(False, 2, "Singular Hessian: {}".format(err),
                          nl, it)
        theta_new = theta + step
        try:
            nl_new, dnl_new, d2nl_new = fcn(theta_new)
        except np.linalg.LinAlgError:
            nl_new = np.inf
        if not np.isfinite(nl_new) or nl_new > nl:
            # back up and take a smaller step
            reg *= 10
            if reg > 1e12:
                return result(False, 2, "Regularization diverged.", nl, it)
            continue
        reg /= 10
        delta = nl - nl_new
        theta, nl, dnl, d2nl = theta_new, nl_new, dnl_new, d2nl_new
        if delta < thres:
            return result(True, 0, "Converged.", nl, it)
    logger.warning('Newton-Raphson reached the maximum of {} '
                   'iterations'.format(max_iter))
    return result(True, 1, "Maximum number of iterations reached.", nl,
                  max_iter)
