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
import logging

"""
Some utility functions that can be used by different algorithms
"""

logger = logging.getLogger(__name__)

__all__ = [
    "indicator_matrix",
    "make_pd",
    "trace_ab_trans",
    "is_vector",
]


def is_vector(a):
    """Check whether an array is a vector (1D, or 2D with a single column)

    Parameters
    ----------

    a : array


    Returns
    -------

    bool
        True if `a` can be treated as a vector of labels.
    """
    a = np.asarray(a)
    return a.ndim == 1 or (a.ndim == 2 and min(a.shape) == 1)


def indicator_matrix(labels, mode='identity_p'):
    """Build a binary design matrix that maps observations to groups


    Parameters
    ----------

    labels : 1D array, shape=[observations]
        Group label of each observation.

    mode : str, default 'identity_p'
        'identity_p': one column per distinct positive (non-zero) label,
        in sorted order. Observations labelled 0 get an all-zero row.
        'identity': one column per distinct label, 0 included.


    Returns
    -------

    Z : 2D array, shape=[observations, groups]
        The indicator matrix.
    """
    labels = np.asarray(labels).ravel()
    if mode == 'identity':
        groups = np.unique(labels)
    elif mode == 'identity_p':
        groups = np.unique(labels)
        groups = groups[groups != 0]
    else:
        raise ValueError("Unknown indicator matrix mode: {}".format(mode))
    return (labels[:, np.newaxis] == groups[np.newaxis, :]).astype(float)


def make_pd(G, thresh=1e-5):
    """Project a square matrix onto the nearest positive definite matrix

    The matrix is symmetrized and all eigenvalues smaller than
    `thresh` are raised to `thresh`.


    Parameters
    ----------

    G : 2D array, shape=[conditions, conditions]

    thresh : float, default 1e-5
        Smallest eigenvalue allowed in the result.


    Returns
    -------

    G_pd : 2D array, shape=[conditions, conditions]
        Symmetric, positive definite version of `G`.
    """
    G = (G + G.T) / 2
    eig_val, eig_vec = np.linalg.eigh(G)
    n_floored = np.sum(eig_val < thresh)
    if n_floored > 0:
        logger.debug('Raising {} eigenvalue(s) to {}'.format(
            n_floored, thresh))
    eig_val = np.maximum(eig_val, thresh)
    G_pd = (eig_vec * eig_val) @ eig_vec.T
    return (G_pd + G_pd.T) / 2


def trace_ab_trans(a, b):
    """Compute trace(a * b.T) without forming the product

    Parameters
    ----------

    a : 2D array

    b : 2D array, same shape as a


    Returns
    -------

    float
    """
    return np.sum(a * b)
