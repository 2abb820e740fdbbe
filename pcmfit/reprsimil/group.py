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
"""Group fits of pattern component models with crossvalidation

    The structural parameters of a model are shared across subjects,
    while noise, scale and run parameters are fitted for each subject.
    Models of different flexibility are compared with a
    leave-one-subject-out crossvalidated likelihood: the structural
    parameters are estimated from all but one subject, and the
    likelihood of the held-out subject is evaluated with G fixed at
    the prediction of that fit.

 .. [Diedrichsen2017] "Representational models: A common framework for
    understanding encoding, pattern-component, and
    representational-similarity analysis",
    J. Diedrichsen, N. Kriegeskorte, PLoS Computational Biology 13(4),
    2017, e1005508
"""

import functools
import logging
import time

import numpy as np
from joblib import Parallel, delayed
from sklearn.base import BaseEstimator
from sklearn.exceptions import NotFittedError
from sklearn.utils import assert_all_finite

from .crossval import est_G_crossval
from .likelihood import likelihood_group
from .models import ModelBase, FixedModel, FreeDirectModel
from .optimize import FitError, minimize, newton_raphson
from ..utils.utils import indicator_matrix, is_vector

__all__ = [
    "GroupCrossvalPCM",
    "fit_model_group_crossval",
    "preprocess_subject",
    "resolve_starting_values",
    "scale_start",
]

logger = logging.getLogger(__name__)

RUN_EFFECTS = ('random', 'fixed')
MIN_SCALE = 1e-5
MIN_VARIANCE = 1e-5


def preprocess_subject(Y, partition_vec, condition_vec, run_effect='random'):
    """Sufficient statistics and starting values of one subject

    Parameters
    ----------
    Y: 2D array, shape=[N, P]
        Activity estimates, preferably multivariate noise-normalized.

    partition_vec: 1D array, shape=[N]
        Partition (run) of each row of Y. Unlike `est_G_crossval`, a
        shorter vector is not padded with run intercepts, as the run
        indicator needs the partition of every row.

    condition_vec: 1D array, shape=[N], or 2D array, shape=[N, K]
        Condition of each row of Y, or the design matrix Z.

    run_effect: 'random' or 'fixed'

    Returns
    -------
    subject: dict
        'Z', 'YY', 'G_hat', 'Sig_hat', 'noise0', 'run0', 'N', 'P',
        'B' (run indicator, random run effect) and 'X' (run indicator,
        fixed run effect).
    """
    Y = np.asarray(Y, dtype=float)
    if Y.ndim != 2:
        raise ValueError("Data of each subject need to be a 2D array.")
    assert_all_finite(Y)
    N, P = Y.shape

    partition_vec = np.asarray(partition_vec).ravel()
    if partition_vec.size != N:
        raise ValueError("Partition vector has {} entries, data have {} "
                         "rows.".format(partition_vec.size, N))
    condition_vec = np.asarray(condition_vec)
    if is_vector(condition_vec):
        condition_vec = condition_vec.ravel()
        Z = indicator_matrix(condition_vec, 'identity_p')
    else:
        Z = condition_vec.astype(float)
    if Z.shape[0] != N:
        raise ValueError("Condition design has {} rows, data have {} "
                         "rows.".format(Z.shape[0], N))
    K = Z.shape[1]
    if K < 2:
        raise ValueError("At least two conditions are needed.")

    run_indicator = indicator_matrix(partition_vec, 'identity_p')
    G_hat, Sig_hat = est_G_crossval(Y, partition_vec, condition_vec,
                                    return_sig=True)

    # mean off-diagonal covariance approximates the run effect
    run_var = (np.sum(Sig_hat) - np.trace(Sig_hat)) / (K * (K - 1))
    noise_var = np.trace(Sig_hat) / K - max(run_var, MIN_VARIANCE)
    if run_var < MIN_VARIANCE or noise_var < MIN_VARIANCE:
        logger.warning('Raising non-positive starting variance (run: {}, '
                       'noise: {}) to {}'.format(run_var, noise_var,
                                                 MIN_VARIANCE))
    run0 = np.log(max(run_var, MIN_VARIANCE))
    noise0 = np.log(max(noise_var, MIN_VARIANCE))

    return {
        'Z': Z,
        'YY': Y @ Y.T,
        'G_hat': G_hat,
        'Sig_hat': Sig_hat,
        'noise0': noise0,
        'run0': run0,
        'N': N,
        'P': P,
        'B': run_indicator if run_effect == 'random' else None,
        'X': run_indicator if run_effect == 'fixed' else None,
    }


def scale_start(G_hat, G_mean):
    """Log of the regression coefficient of G_hat onto G_mean

    The ratio is floored at 1e-5 so that it is a valid argument of the
    logarithm.
    """
    g0 = np.ravel(G_mean)
    g = np.ravel(G_hat)
    with np.errstate(divide='ignore', invalid='ignore'):
        scaling = (g0 @ g) / (g0 @ g0)
    if not np.isfinite(scaling) or scaling < MIN_SCALE:
        logger.warning('Scale starting value {} raised to {}'.format(
            scaling, MIN_SCALE))
        scaling = MIN_SCALE
    return np.log(scaling)


def resolve_starting_values(models, G_hat_mean, noise0, scale0, run0,
                            group_fit=None, fit_scale=True,
                            run_effect='random'):
    """Starting values of all models

    Parameters
    ----------
    models: list of ModelBase

    G_hat_mean: 2D array, shape=[K, K]
        Mean crossvalidated G across subjects.

    noise0, scale0, run0: 2D arrays, shape=[n_subj, n_models]
        Starting values of the subject parameters.

    group_fit: list of 1D arrays, optional
        Parameters of a previous group fit for each model, ordered
        [theta; noise (n_subj); scale (n_subj) if fit_scale;
        run (n_subj) if run_effect is 'random'].

    Returns
    -------
    theta0: list of 1D arrays
        Structural starting values of each model.

    noise0, scale0, run0: 2D arrays, shape=[n_subj, n_models]
        Copies of the inputs, overwritten with the group fit values.
    """
    noise0 = np.array(noise0, dtype=float)
    scale0 = np.array(scale0, dtype=float)
    run0 = np.array(run0, dtype=float)
    n_subj = noise0.shape[0]
    if group_fit is not None and len(group_fit) != len(models):
        raise ValueError("Group fit needs one parameter vector per model.")

    theta0 = []
    for m, model in enumerate(models):
        if group_fit is None:
            if model.theta0 is not None:
                theta0.append(model.theta0.copy())
            else:
                theta0.append(model.get_starting_values(G_hat_mean))
            continue

        fit = np.asarray(group_fit[m], dtype=float)
        if fit.ndim > 2 or (fit.ndim == 2 and fit.shape[1] > 1):
            raise ValueError("Group fit needs to be a list with "
                             "n_params x 1 vectors for each model.")
        fit = fit.ravel()
        n_expected = model.n_params + n_subj * (
            1 + bool(fit_scale) + (run_effect == 'random'))
        if fit.size < n_expected:
            raise ValueError("Group fit of model {} has {} parameters, "
                             "expected {}".format(m, fit.size, n_expected))
        theta0.append(fit[:model.n_params])
        idx = model.n_params
        noise0[:, m] = fit[idx:idx + n_subj]
        idx += n_subj
        if fit_scale:
            scale0[:, m] = fit[idx:idx + n_subj]
            idx += n_subj
        if run_effect == 'random':
            run0[:, m] = fit[idx:idx + n_subj]
    return theta0, noise0, scale0, run0


def _per_subject(vec, n_subj, name):
    """One entry per subject, repeating a single shared entry"""
    if isinstance(vec, (list, tuple)) and len(vec) > 0 and \
            np.ndim(vec[0]) >= 1:
        if len(vec) != n_subj:
            raise ValueError("{} has {} entries for {} subjects".format(
                name, len(vec), n_subj))
        return list(vec)
    return [vec] * n_subj


class GroupCrossvalPCM(BaseEstimator):
    """Leave-one-subject-out crossvalidated group fit of PCM models

    For each held-out subject and each model, the structural parameters
    are fitted on the remaining subjects (together with their noise,
    scale and run parameters). The predicted G is then kept fixed and
    only the noise, scale and run parameters of the held-out subject are
    fitted. The likelihood of this fit is the crossvalidated likelihood.

    Parameters
    ----------
    run_effect: 'random' or 'fixed', default 'random'
        'random' estimates the variance of the run effect for every
        subject; 'fixed' removes the run means with ReML.

    fit_scale: bool, default True
        Fit a scaling parameter of G for every subject.

    max_iter: int, default 1000
        Maximum iterations of the scipy minimizer.

    S: list of 2D arrays, optional
        Assumed noise structure of each subject, usually
        inv(X' X) of the first-level design matrix X.

    group_fit: list of 1D arrays, optional
        Parameters of a previous group fit for each model, used as
        starting values.

    verbose: bool, default True
        Log the progress of every fit at info level.

    n_jobs: int, default 1
        Number of held-out subjects fitted in parallel with joblib.

    Attributes
    ----------
    likelihood_: 2D array, shape=[n_subj, n_models]
        Crossvalidated log-likelihood of each held-out subject.

    fit_likelihood_: 2D array, shape=[n_subj, n_models]
        Log-likelihood of the training fit (NaN if no fit was needed).

    noise_, scale_, run_: 2D arrays, shape=[n_subj, n_models]
        Fitted noise variance, scale and run variance of the held-out
        subject (NaN if not fitted).

    iterations_: 2D array, shape=[n_subj, n_models]
        Iterations of the training fit.

    reg_: 2D array, shape=[n_subj, n_models]
        Regularization Newton-Raphson ended with on the training fit
        (NaN if minimize was used or no fit was needed).

    time_: 2D array, shape=[n_subj, n_models]
        Elapsed seconds per fit.

    train_method_, method_: 2D object arrays, shape=[n_subj, n_models]
        Optimizer used for the training fit and for the held-out
        subject.

    theta_: list of 2D arrays, shape=[n_params, n_subj]
        Structural parameters of every training fit.

    G_pred_: list of 3D arrays, shape=[n_subj, K, K]
        Predicted G of each model for each held-out subject.
    """

    def __init__(self, run_effect='random', fit_scale=True, max_iter=1000,
                 S=None, group_fit=None, verbose=True, n_jobs=1):
        self.run_effect = run_effect
        self.fit_scale = fit_scale
        self.max_iter = max_iter
        self.S = S
        self.group_fit = group_fit
        self.verbose = verbose
        self.n_jobs = n_jobs

    def _check_params(self):
        if self.run_effect not in RUN_EFFECTS:
            raise ValueError("run_effect must be one of {}, not "
                             "{}".format(RUN_EFFECTS, self.run_effect))
        if self.max_iter <= 0:
            raise ValueError("max_iter must be positive.")

    def fit(self, Y, models, partition_vec, condition_vec):
        """Fit the models with leave-one-subject-out crossvalidation

        Parameters
        ----------
        Y: list of 2D arrays, element i has shape=[N_i, P_i]
            Activity estimates of each subject.

        models: ModelBase or list of ModelBase
            Competing models.

        partition_vec: 1D array or list of 1D arrays
            Partition of each row of Y; a single vector is shared by
            all subjects.

        condition_vec: 1D/2D array or list of 1D/2D arrays
            Condition of each row of Y, or a design matrix; a single
            entry is shared by all subjects.
        """
        self._check_params()
        if isinstance(models, ModelBase):
            models = [models]
        models = list(models)
        n_subj = len(Y)
        n_models = len(models)
        if n_subj < 2:
            raise ValueError("Leave-one-subject-out crossvalidation needs "
                             "at least two subjects.")
        partitions = _per_subject(partition_vec, n_subj, 'partition_vec')
        conditions = _per_subject(condition_vec, n_subj, 'condition_vec')
        if self.S is not None and len(self.S) != n_subj:
            raise ValueError("S needs one noise structure per subject.")
        for m, model in enumerate(models):
            if isinstance(model, FixedModel) and \
                    model.n_instances not in (1, n_subj):
                raise ValueError("Fixed model {} has {} instances of G for "
                                 "{} subjects".format(m, model.n_instances,
                                                      n_subj))

        subjects = [preprocess_subject(Y[s], partitions[s], conditions[s],
                                       self.run_effect)
                    for s in range(n_subj)]
        G_hat = np.stack([subj['G_hat'] for subj in subjects])
        G_hat_mean = G_hat.mean(axis=0)

        noise0 = np.tile([[subj['noise0']] for subj in subjects],
                         (1, n_models))
        run0 = np.tile([[subj['run0']] for subj in subjects],
                       (1, n_models))
        scale0 = np.zeros((n_subj, n_models))
        if self.fit_scale:
            scale0[:] = np.array([[scale_start(G_hat[s], G_hat_mean)]
                                  for s in range(n_subj)])
        theta0, noise0, scale0, run0 = resolve_starting_values(
            models, G_hat_mean, noise0, scale0, run0,
            group_fit=self.group_fit, fit_scale=self.fit_scale,
            run_effect=self.run_effect)

        self.G_hat_ = G_hat
        self.likelihood_ = np.zeros((n_subj, n_models))
        self.fit_likelihood_ = np.full((n_subj, n_models), np.nan)
        self.noise_ = np.full((n_subj, n_models), np.nan)
        self.scale_ = np.full((n_subj, n_models), np.nan)
        self.run_ = np.full((n_subj, n_models), np.nan)
        self.iterations_ = np.zeros((n_subj, n_models), dtype=int)
        self.reg_ = np.full((n_subj, n_models), np.nan)
        self.time_ = np.zeros((n_subj, n_models))
        self.train_method_ = np.full((n_subj, n_models), None, dtype=object)
        self.method_ = np.full((n_subj, n_models), None, dtype=object)
        self.theta_ = [np.full((model.n_params, n_subj), np.nan)
                       for model in models]
        self.G_pred_ = [np.zeros((n_subj,) + G_hat_mean.shape)
                        for _ in models]

        results = Parallel(n_jobs=self.n_jobs)(
            delayed(self._fit_held_out_subject)(
                s, subjects, models, theta0, noise0, scale0, run0)
            for s in range(n_subj))

        for s, cells in enumerate(results):
            for m, cell in enumerate(cells):
                self.likelihood_[s, m] = cell['likelihood']
                self.fit_likelihood_[s, m] = cell['fit_likelihood']
                self.noise_[s, m] = cell['noise']
                self.scale_[s, m] = cell['scale']
                self.run_[s, m] = cell['run']
                self.iterations_[s, m] = cell['iterations']
                self.reg_[s, m] = cell['reg']
                self.time_[s, m] = cell['time']
                self.train_method_[s, m] = cell['train_method']
                self.method_[s, m] = cell['method']
                self.theta_[m][:, s] = cell['theta']
                self.G_pred_[m][s] = cell['G']
        return self

    @property
    def report_(self):
        """Results per held-out subject (rows) and model (columns)"""
        if not hasattr(self, 'likelihood_'):
            raise NotFittedError("The model fit has not been run yet.")
        return {
            'SN': np.arange(1, self.likelihood_.shape[0] + 1),
            'likelihood': self.likelihood_,
            'fit_likelihood': self.fit_likelihood_,
            'noise': self.noise_,
            'scale': self.scale_,
            'run': self.run_,
            'iterations': self.iterations_,
            'reg': self.reg_,
            'time': self.time_,
            'train_method': self.train_method_,
            'method': self.method_,
        }

    def _objective(self, subjects, model_or_G, indices):
        """Group likelihood bound to the data of some subjects"""
        return functools.partial(
            likelihood_group,
            YY=[subjects[i]['YY'] for i in indices],
            M=model_or_G,
            Z=[subjects[i]['Z'] for i in indices],
            P=[subjects[i]['P'] for i in indices],
            run_effect=self.run_effect,
            X=[subjects[i]['X'] for i in indices]
            if self.run_effect == 'fixed' else None,
            B=[subjects[i]['B'] for i in indices]
            if self.run_effect == 'random' else None,
            S=None if self.S is None else [self.S[i] for i in indices],
            fit_scale=self.fit_scale)

    def _optimize(self, x0, fcn, algorithm, context):
        """Run the algorithm of a model, falling back to minimize

        Raises
        ------
        FitError
            If the fallback minimizer fails as well.
        """
        if algorithm == 'NR':
            res = newton_raphson(x0, fcn)
            if res.success:
                return res
            logger.warning('Newton-Raphson failed for {} ({}), using '
                           'minimize instead'.format(context, res.message))
        try:
            return minimize(x0, fcn, self.max_iter)
        except FitError as err:
            raise FitError("Fit of {} failed: {}".format(context, err)) \
                from err

    def _fit_held_out_subject(self, s, subjects, models, theta0, noise0,
                              scale0, run0):
        n_subj = len(subjects)
        train = np.delete(np.arange(n_subj), s)
        log = logger.info if self.verbose else logger.debug
        cells = []
        for m, model in enumerate(models):
            name = model.name if model.name is not None else m + 1
            log('Crossval subject: {} model: {}'.format(s + 1, name))
            context = 'subject {} with model {}'.format(s + 1, name)
            tic = time.time()
            cell = {'fit_likelihood': np.nan, 'iterations': 0, 'reg': np.nan,
                    'train_method': None, 'theta': np.zeros(0),
                    'scale': np.nan, 'run': np.nan}

            # Structure from all subjects but the held-out one
            if isinstance(model, FixedModel):
                G = model.training_G(train)
            elif isinstance(model, FreeDirectModel):
                G = model.training_G(
                    np.stack([subjects[i]['G_hat'] for i in train]))
            else:
                x0 = [theta0[m], noise0[train, m]]
                if self.fit_scale:
                    x0.append(scale0[train, m])
                if self.run_effect == 'random':
                    x0.append(run0[train, m])
                res = self._optimize(
                    np.concatenate(x0),
                    self._objective(subjects, model, train),
                    model.fit_algorithm, 'training set of ' + context)
                cell['theta'] = res.x[:model.n_params]
                G, _ = model.predict(cell['theta'])
                cell['fit_likelihood'] = -res.fun
                cell['iterations'] = res.nit
                cell['train_method'] = res.method
                if res.method == 'NR':
                    cell['reg'] = res.reg
            cell['G'] = G

            # Noise, scale and run of the held-out subject with G fixed
            x0 = [noise0[s, m]]
            if self.fit_scale:
                x0.append(scale0[s, m])
            if self.run_effect == 'random':
                x0.append(run0[s, m])
            res = self._optimize(np.array(x0),
                                 self._objective(subjects, G, [s]),
                                 model.fit_algorithm, context)
            cell['likelihood'] = -res.fun
            cell['method'] = res.method
            cell['time'] = time.time() - tic
            cell['noise'] = np.exp(res.x[0])
            if self.fit_scale:
                cell['scale'] = np.exp(res.x[1])
            if self.run_effect == 'random':
                cell['run'] = np.exp(res.x[1 + int(self.fit_scale)])
            log('Iterations {}, elapsed time: {:3.3f}'.format(
                cell['iterations'], cell['time']))
            cells.append(cell)
        return cells


def fit_model_group_crossval(Y, models, partition_vec, condition_vec,
                             **kwargs):
    """Functional interface to `GroupCrossvalPCM`

    Returns
    -------
    report: dict
        See `GroupCrossvalPCM.report_`.

    theta_hat: list of 2D arrays, shape=[n_params, n_subj]

    G_pred: list of 3D arrays, shape=[n_subj, K, K]
    """
    pcm = GroupCrossvalPCM(**kwargs).fit(Y, models, partition_vec,
                                         condition_vec)
    return pcm.report_, pcm.theta_, pcm.G_pred_
