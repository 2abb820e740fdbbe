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
"""Crossvalidated estimation of the second moment matrix

    The condition means are estimated separately on one partition
    (imaging run) and on the remaining partitions. The product of the
    two independent estimates is an unbiased estimator of the second
    moment matrix G of the true activity patterns. It is the second
    moment matrix matching the crossvalidated Mahalanobis distance.

 .. [Walther2016] "Reliability of dissimilarity measures for multi-voxel
    pattern analysis",
    A. Walther, H. Nili, N. Ejaz, A. Alink, N. Kriegeskorte,
    J. Diedrichsen, NeuroImage 137, 2016, 188--200
"""

import logging

import numpy as np
from sklearn.utils import assert_all_finite

from ..utils.utils import indicator_matrix, is_vector

__all__ = [
    "est_G_crossval",
]

logger = logging.getLogger(__name__)


def _check_partition(partition, n_obs):
    """Pad the partition vector with run intercepts up to n_obs"""
    partition = np.asarray(partition).ravel()
    missing = n_obs - partition.size
    if missing < 0:
        raise ValueError("The partition vector has {} entries but the data "
                         "only {} rows.".format(partition.size, n_obs))
    if missing > 0:
        # trailing regressors are assumed to be the run intercepts
        partition = np.concatenate([partition,
                                    np.arange(1, missing + 1)])
    return partition


def _condition_design(condition_vec, n_obs):
    """Make the second level design matrix of the conditions of interest

    Returns
    -------
    Z : 2D array, shape=[n_obs, n_cond + n_nuisance]
        Indicator columns of the conditions of interest followed by one
        column for each regressor of no interest.

    n_cond : int
        Number of conditions of interest.
    """
    condition_vec = np.asarray(condition_vec)
    if is_vector(condition_vec):
        condition_vec = condition_vec.ravel()
        missing = n_obs - condition_vec.size
        if missing < 0:
            raise ValueError("The condition vector has {} entries but the "
                             "data only {} rows.".format(condition_vec.size,
                                                         n_obs))
        if missing > 0:
            condition_vec = np.concatenate([condition_vec,
                                            np.zeros(missing)])
        Z = indicator_matrix(condition_vec, 'identity_p')
    else:
        Z = condition_vec.astype(float)
        if Z.shape[0] != n_obs:
            raise ValueError("The condition design matrix has {} rows but "
                             "the data {}.".format(Z.shape[0], n_obs))
    n_cond = Z.shape[1]

    # regressors of no interest each get their own column
    no_interest = np.flatnonzero(np.all(Z == 0, axis=1))
    Z_nuisance = np.zeros((n_obs, no_interest.size))
    Z_nuisance[no_interest, np.arange(no_interest.size)] = 1
    return np.hstack([Z, Z_nuisance]), n_cond


def est_G_crossval(B, partition, condition_vec, X=None, return_sig=False):
    """Estimate the second moment matrix with crossvalidation

    For every partition p, the condition means estimated from p alone
    are multiplied with the condition means estimated from all other
    partitions. The estimate is averaged across partitions. If the
    first-level design matrix `X` is given, the regressors are combined
    across partitions by generalized least squares, which takes the
    different variability of the regressors into account. In this case
    not every regressor needs to be present in every partition.

    Parameters
    ----------
    B : 2D array, shape=[N, P]
        Noise-normalized activity estimates (N regressors by P voxels).
        If `X` is given, B must also contain the regressors of no
        interest (intercepts etc.).

    partition : 1D array, shape=[N]
        Partition (run) of each regressor, values 1...M. Zeros are not
        used as a fold. If shorter than N, the remaining regressors are
        taken to be run intercepts, one per partition.

    condition_vec : 1D array, shape=[N], or 2D array, shape=[N, K]
        Condition of each regressor, 0 marks a regressor of no interest.
        If shorter than N, the remaining entries are taken to be 0.
        A matrix is used directly as the second level design matrix.

    X : 2D array, shape=[T, N], optional
        First-level design matrix used to estimate B. If temporal
        filtering or prewhitening was applied, this has to be the
        filtered design matrix.

    return_sig : bool, default False
        Also return the covariance of the condition estimates across
        partitions.

    Returns
    -------
    G : 2D array, shape=[K, K]
        Crossvalidated second moment matrix, normalized by the number of
        voxels.

    Sig : 2D array, shape=[K, K]
        Covariance matrix of the condition estimates across partitions.
        Only returned if `return_sig` is True.
    """
    B = np.asarray(B, dtype=float)
    if B.ndim != 2:
        raise ValueError("Activity estimates need to be a 2D array.")
    assert_all_finite(B)
    n_obs, n_vox = B.shape

    if X is not None:
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != n_obs:
            raise ValueError("For optimal integration of beta weights, all "
                             "N regressors (including no-interest) need to "
                             "be submitted in B: X has {} columns, B has {} "
                             "rows.".format(X.shape[-1], n_obs))

    partition = _check_partition(partition, n_obs)
    parts = np.unique(partition)
    parts = parts[parts != 0]
    n_part = parts.size
    if n_part < 1:
        raise ValueError("At least one partition is needed.")
    if return_sig and n_part < 2:
        raise ValueError("The covariance across partitions needs at least "
                         "two partitions.")

    Z, n_cond = _condition_design(condition_vec, n_obs)
    logger.debug('Crossvalidating {} conditions over {} partitions'.format(
        n_cond, n_part))

    A = np.zeros((n_part, n_cond, n_vox))
    G = np.zeros((n_part, n_cond, n_cond))
    for i, part in enumerate(parts):
        in_idx = partition == part
        out_idx = ~in_idx

        Z_in = Z[in_idx]
        used_in = np.any(Z_in != 0, axis=0)
        Z_in = Z_in[:, used_in]
        B_in = B[in_idx]

        Z_out = Z[out_idx]
        used_out = np.any(Z_out != 0, axis=0)
        Z_out = Z_out[:, used_out]
        B_out = B[out_idx]

        interest_in = np.flatnonzero(used_in[:n_cond])
        interest_out = np.flatnonzero(used_out[:n_cond])

        if X is not None:
            X_in = X[:, in_idx]
            active = np.any(X_in != 0, axis=0)
            X_in = X_in[:, active]
            Z_in = X_in @ Z_in[active]
            B_in = X_in @ B_in[active]
            X_out = X[:, out_idx]
            Z_out = X_out @ Z_out
            B_out = X_out @ B_out

        est_in = np.linalg.pinv(Z_in) @ B_in
        est_out = np.linalg.pinv(Z_out) @ B_out

        A[i, interest_in] = est_in[:interest_in.size]
        B_held_out = np.zeros((n_cond, n_vox))
        B_held_out[interest_out] = est_out[:interest_out.size]
        # normalized by the number of voxels
        G[i] = A[i] @ B_held_out.T / n_vox
    G = G.mean(axis=0)

    if not return_sig:
        return G

    R = A - A.mean(axis=0)
    Sig = np.einsum('pkv,plv->kl', R, R) / n_vox / (n_part - 1)
    return G, Sig
