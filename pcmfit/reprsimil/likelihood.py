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
"""Marginal likelihood of pattern component models

    The activity estimates Y (N x P) of one subject are modelled as P
    independent draws from N(0, V) with

    .. math::
        V = s Z G Z^T + \\sigma^2 S + r B B^T

    where s is the scale, sigma^2 the noise variance, S the noise
    structure and r the variance of the run effect with run indicator B.
    A fixed run effect is instead removed with restricted maximum
    likelihood (ReML), using the run indicator as X.
    The data enter only through the sufficient statistic YY = Y Y^T.
"""

import logging

import numpy as np
import scipy.linalg

from .models import ModelBase
from ..utils.utils import trace_ab_trans

__all__ = [
    "likelihood_individ",
    "likelihood_group",
    "n_group_params",
]

logger = logging.getLogger(__name__)


def likelihood_individ(theta_nuisance, YY, G, dGdtheta, Z, P, X=None, B=None,
                       S=None, fit_scale=False):
    """Log-likelihood of one subject and its derivatives

    Parameters
    ----------
    theta_nuisance: 1D array
        [log noise, log scale (if fit_scale), log run (if B is given)]

    YY: 2D array, shape=[N, N]
        Y Y^T of the activity estimates.

    G: 2D array, shape=[K, K]
        Second moment matrix.

    dGdtheta: 3D array, shape=[n_struct, K, K]
        Derivatives of G with respect to the structural parameters.

    Z: 2D array, shape=[N, K]
        Design matrix of the conditions.

    P: int
        Number of voxels.

    X: 2D array, shape=[N, n_runs], optional
        Fixed effects removed with ReML.

    B: 2D array, shape=[N, n_runs], optional
        Run indicator for a random run effect.

    S: 2D array, shape=[N, N], optional
        Noise structure. Identity if not given.

    fit_scale: bool
        Whether theta_nuisance contains a scale parameter.

    Returns
    -------
    l: float
        Log-likelihood.

    dl: 1D array, shape=[n_struct + n_nuisance]
        Derivatives with respect to [structural params, nuisance params].

    d2l: 2D array
        Expected second derivatives (negative Fisher information).

    Raises
    ------
    numpy.linalg.LinAlgError
        If the covariance matrix is not finite or not positive definite.
    """
    N = Z.shape[0]
    noise = np.exp(theta_nuisance[0])
    idx = 1
    scale = 1.0
    if fit_scale:
        scale = np.exp(theta_nuisance[idx])
        idx += 1
    if S is None:
        S = np.eye(N)

    ZGZ = Z @ G @ Z.T
    dV = [scale * Z @ dG @ Z.T for dG in dGdtheta]
    dV.append(noise * S)
    V = scale * ZGZ + noise * S
    if fit_scale:
        dV.append(scale * ZGZ)
    if B is not None:
        run = np.exp(theta_nuisance[idx])
        BB = run * (B @ B.T)
        V = V + BB
        dV.append(BB)

    if not np.all(np.isfinite(V)):
        raise np.linalg.LinAlgError("Covariance matrix is not finite, "
                                    "variance parameters overflowed.")
    L = scipy.linalg.cholesky(V, lower=True)
    iV = scipy.linalg.cho_solve((L, True), np.eye(N))
    ldet = 2 * np.sum(np.log(np.diag(L)))
    if X is not None:
        iVX = iV @ X
        XiVX = X.T @ iVX
        iVr = iV - iVX @ np.linalg.pinv(XiVX) @ iVX.T
    else:
        iVr = iV

    l = -P / 2 * ldet - 0.5 * trace_ab_trans(iVr, YY)
    if X is not None:
        # ReML correction: -P/2 log|X' iV X|
        l -= P / 2 * np.linalg.slogdet(XiVX)[1]

    iVr_YY_iVr = iVr @ YY @ iVr
    iVr_dV = [iVr @ d for d in dV]
    n = len(dV)
    dl = np.zeros(n)
    d2l = np.zeros((n, n))
    for i in range(n):
        dl[i] = -P / 2 * np.trace(iVr_dV[i]) \
            + 0.5 * trace_ab_trans(iVr_YY_iVr, dV[i])
        for j in range(i, n):
            d2l[i, j] = -P / 2 * trace_ab_trans(iVr_dV[i], iVr_dV[j].T)
            d2l[j, i] = d2l[i, j]
    return l, dl, d2l


def n_group_params(n_struct, n_subj, fit_scale, run_effect):
    """Length of the parameter vector of a group fit"""
    n_per_subj = 1 + bool(fit_scale) + (run_effect == 'random')
    return n_struct + n_subj * n_per_subj


def likelihood_group(theta, YY, M, Z, P, run_effect='random', X=None, B=None,
                     S=None, fit_scale=True):
    """Negative log-likelihood of a group of subjects

    The structural parameters are shared across subjects, the noise,
    scale and run parameters are fitted for each subject.

    Parameters
    ----------
    theta: 1D array
        [structural params; log noise (n_subj); log scale (n_subj) if
        fit_scale; log run (n_subj) if run_effect is 'random']

    YY: list of 2D arrays
        Y Y^T of each subject.

    M: ModelBase or 2D array
        Model with shared parameters, or a fixed G without structural
        parameters.

    Z: list of 2D arrays
        Condition design matrix of each subject.

    P: list of int
        Number of voxels of each subject.

    run_effect: 'random' or 'fixed'

    X: list of 2D arrays, optional
        Fixed effects of each subject (run indicators for a fixed run
        effect).

    B: list of 2D arrays, optional
        Run indicators of each subject for a random run effect.

    S: list of 2D arrays, optional
        Noise structure of each subject.

    fit_scale: bool

    Returns
    -------
    neg_log_like: float

    dnl: 1D array
        Gradient of neg_log_like.

    d2nl: 2D array
        Expected Hessian of neg_log_like.
    """
    theta = np.asarray(theta, dtype=float).ravel()
    n_subj = len(YY)
    if isinstance(M, ModelBase):
        n_struct = M.n_params
        G, dGdtheta = M.predict(theta[:n_struct])
    else:
        G = np.asarray(M, dtype=float)
        n_struct = 0
        dGdtheta = np.zeros((0,) + G.shape)

    n_total = n_group_params(n_struct, n_subj, fit_scale, run_effect)
    if theta.size != n_total:
        raise ValueError("Parameter vector has {} entries, expected "
                         "{}".format(theta.size, n_total))
    if run_effect == 'random' and B is None:
        raise ValueError("A random run effect needs run indicators B.")

    neg_log_like = 0.0
    dnl = np.zeros(n_total)
    d2nl = np.zeros((n_total, n_total))
    struct_idx = list(range(n_struct))
    for s in range(n_subj):
        idx = [n_struct + s]
        if fit_scale:
            idx.append(n_struct + n_subj + s)
        if run_effect == 'random':
            idx.append(n_struct + n_subj * (1 + bool(fit_scale)) + s)
        l, dl, d2l = likelihood_individ(
            theta[idx], YY[s], G, dGdtheta, Z[s], P[s],
            X=None if X is None else X[s],
            B=B[s] if run_effect == 'random' else None,
            S=None if S is None else S[s],
            fit_scale=fit_scale)
        all_idx = struct_idx + idx
        neg_log_like -= l
        dnl[all_idx] -= dl
        d2nl[np.ix_(all_idx, all_idx)] -= d2l
    return neg_log_like, dnl, d2nl
