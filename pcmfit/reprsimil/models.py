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
"""Pattern component models

    Every model maps a vector of structural parameters theta to a
    predicted second moment matrix G of the K conditions, together with
    the derivatives of G with respect to theta. Noise, scale and run
    parameters are not part of the model; they are fitted separately
    for every subject.
"""

import abc
import logging

import numpy as np

from ..utils.utils import make_pd

__all__ = [
    "ModelBase",
    "FixedModel",
    "ComponentModel",
    "FeatureModel",
    "NonlinearModel",
    "FreeDirectModel",
]

logger = logging.getLogger(__name__)

FIT_ALGORITHMS = ('NR', 'minimize')


def _as_stack(mats, name):
    """Return a stack of matrices with shape=[n, rows, cols]"""
    mats = np.asarray(mats, dtype=float)
    if mats.ndim == 2:
        mats = mats[np.newaxis]
    if mats.ndim != 3:
        raise ValueError("{} needs to be a matrix or a stack of "
                         "matrices.".format(name))
    return mats


class ModelBase(abc.ABC):
    """Base class for pattern component models.

    Parameters
    ----------

    name: str, optional
        Name used in log messages.

    theta0: 1D array, optional
        Starting values of the structural parameters. If not given, they
        are derived from the crossvalidated G of the data.

    fit_algorithm: 'NR' or 'minimize', optional
        Optimizer tried first. Defaults to the best choice for the
        model type.

    """

    default_algorithm = 'NR'

    def __init__(self, name=None, theta0=None, fit_algorithm=None):
        self.name = name
        self.theta0 = None if theta0 is None else \
            np.asarray(theta0, dtype=float).ravel()
        if fit_algorithm is None:
            fit_algorithm = self.default_algorithm
        if fit_algorithm not in FIT_ALGORITHMS:
            raise ValueError("fit_algorithm must be one of {}, not "
                             "{}".format(FIT_ALGORITHMS, fit_algorithm))
        self.fit_algorithm = fit_algorithm

    def __repr__(self):
        return "{}(name={!r}, n_params={})".format(
            type(self).__name__, self.name, self.n_params)

    @property
    @abc.abstractmethod
    def n_params(self):
        """ Number of structural parameters
        """
        pass

    @abc.abstractmethod
    def predict(self, theta):
        """Predicted second moment matrix and its derivatives

        Parameters
        ----------
        theta: 1D array, shape=[n_params]

        Returns
        -------
        G: 2D array, shape=[K, K]

        dGdtheta: 3D array, shape=[n_params, K, K]
        """
        pass

    def get_starting_values(self, G_hat):
        """Starting values of theta given an estimate of G"""
        if self.n_params == 0:
            return np.zeros(0)
        raise ValueError("Model {} needs starting values "
                         "theta0.".format(self))


class FixedModel(ModelBase):
    """Model without structural parameters.

    Parameters
    ----------

    Gc: 2D array, shape=[K, K], or 3D array, shape=[n_subj, K, K]
        Fixed second moment matrix. If a stack is given, it holds one
        matrix per subject and the prediction for a held-out subject is
        the mean over the training subjects.
    """

    def __init__(self, Gc, name=None):
        super(FixedModel, self).__init__(name=name)
        self.Gc = _as_stack(Gc, 'Gc')

    @property
    def n_params(self):
        return 0

    @property
    def n_instances(self):
        return self.Gc.shape[0]

    def predict(self, theta=None):
        K = self.Gc.shape[1]
        return self.Gc.mean(axis=0), np.zeros((0, K, K))

    def training_G(self, train):
        """G for a training set given by subject indices"""
        if self.n_instances > 1:
            return self.Gc[train].mean(axis=0)
        return self.Gc[0].copy()


class ComponentModel(ModelBase):
    """G is a weighted sum of component matrices:
    G = sum_i exp(theta_i) * Gc_i

    Parameters
    ----------

    Gc: 3D array, shape=[n_params, K, K]
        Component matrices.
    """

    def __init__(self, Gc, name=None, theta0=None, fit_algorithm=None):
        super(ComponentModel, self).__init__(name=name, theta0=theta0,
                                             fit_algorithm=fit_algorithm)
        self.Gc = _as_stack(Gc, 'Gc')

    @property
    def n_params(self):
        return self.Gc.shape[0]

    def predict(self, theta):
        theta = np.asarray(theta, dtype=float).ravel()
        if theta.size != self.n_params:
            raise ValueError("Expected {} parameters, got {}".format(
                self.n_params, theta.size))
        dGdtheta = np.exp(theta)[:, np.newaxis, np.newaxis] * self.Gc
        return dGdtheta.sum(axis=0), dGdtheta

    def get_starting_values(self, G_hat):
        X = self.Gc.reshape(self.n_params, -1).T
        h0 = np.linalg.pinv(X) @ np.asarray(G_hat).ravel()
        # components need a positive weight
        h0 = np.maximum(h0, 1e-3)
        return np.log(h0)


class FeatureModel(ModelBase):
    """G = A A', with A a weighted sum of feature matrices:
    A = sum_i theta_i * Ac_i

    Parameters
    ----------

    Ac: 3D array, shape=[n_params, K, n_features]
        Feature component matrices.
    """

    default_algorithm = 'minimize'

    def __init__(self, Ac, name=None, theta0=None, fit_algorithm=None):
        super(FeatureModel, self).__init__(name=name, theta0=theta0,
                                           fit_algorithm=fit_algorithm)
        self.Ac = _as_stack(Ac, 'Ac')

    @property
    def n_params(self):
        return self.Ac.shape[0]

    def predict(self, theta):
        theta = np.asarray(theta, dtype=float).ravel()
        if theta.size != self.n_params:
            raise ValueError("Expected {} parameters, got {}".format(
                self.n_params, theta.size))
        A = np.tensordot(theta, self.Ac, axes=1)
        dA = self.Ac @ A.T
        return A @ A.T, dA + np.transpose(dA, (0, 2, 1))

    def get_starting_values(self, G_hat):
        return np.ones(self.n_params)


class NonlinearModel(ModelBase):
    """Model with a user supplied mapping from theta to G.

    Parameters
    ----------

    modelpred: callable
        Called as modelpred(theta), must return G of shape [K, K] and the
        derivatives dGdtheta of shape [n_params, K, K].

    n_params: int
        Number of structural parameters.

    theta0: 1D array
        Starting values. Required, as there is no general way to derive
        them from the data.
    """

    default_algorithm = 'minimize'

    def __init__(self, modelpred, n_params, name=None, theta0=None,
                 fit_algorithm=None):
        super(NonlinearModel, self).__init__(name=name, theta0=theta0,
                                             fit_algorithm=fit_algorithm)
        if not callable(modelpred):
            raise ValueError("modelpred needs to be callable.")
        self.modelpred = modelpred
        self._n_params = int(n_params)

    @property
    def n_params(self):
        return self._n_params

    def predict(self, theta):
        theta = np.asarray(theta, dtype=float).ravel()
        G, dGdtheta = self.modelpred(theta)
        G = np.asarray(G, dtype=float)
        dGdtheta = np.asarray(dGdtheta, dtype=float).reshape(
            (self.n_params,) + G.shape)
        return G, dGdtheta


class FreeDirectModel(ModelBase):
    """Best achievable model: the mean crossvalidated G of the training
    subjects, projected to a positive definite matrix.
    """

    def __init__(self, name=None):
        super(FreeDirectModel, self).__init__(name=name)

    @property
    def n_params(self):
        return 0

    def predict(self, theta=None):
        raise ValueError("A free direct model takes G from the data, "
                         "use training_G.")

    def training_G(self, G_hat):
        """G from the crossvalidated estimates of the training subjects

        Parameters
        ----------
        G_hat: 3D array, shape=[n_train, K, K]
        """
        return make_pd(np.mean(G_hat, axis=0))
