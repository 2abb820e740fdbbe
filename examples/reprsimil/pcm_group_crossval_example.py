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

"""

    Crossvalidated group fit of pattern component models on simulated data.

    Activity patterns of six conditions are simulated for a group of
    subjects. The first three and the last three conditions share a
    common pattern. Three models are compared with a
    leave-one-subject-out crossvalidated likelihood: a null model in
    which all conditions are independent, a component model with the
    correct block structure, and the free direct model as the ceiling
    of achievable fits.

"""

import logging

import numpy as np

from pcmfit.reprsimil import (ComponentModel, FixedModel, FreeDirectModel,
                              GroupCrossvalPCM, est_G_crossval)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

n_subj = 5
n_cond = 6
n_part = 6
n_vox = 80
rng = np.random.RandomState(0)

# Second moment matrices of the components
blocks = np.zeros((n_cond, n_cond))
blocks[:3, :3] = 1
blocks[3:, 3:] = 1
Gc = np.stack([np.eye(n_cond), blocks])
G_true = 0.5 * Gc[0] + 0.8 * Gc[1]
L = np.linalg.cholesky(G_true)

Y, partitions, conditions = [], [], []
for s in range(n_subj):
    U = L @ rng.randn(n_cond, n_vox)
    runs = [U + 0.5 * rng.randn(1, n_vox) + rng.randn(n_cond, n_vox)
            for _ in range(n_part)]
    Y.append(np.vstack(runs))
    partitions.append(np.repeat(np.arange(1, n_part + 1), n_cond))
    conditions.append(np.tile(np.arange(1, n_cond + 1), n_part))

G_hat = est_G_crossval(Y[0], partitions[0], conditions[0])
logger.info('Crossvalidated G of the first subject:\n{}'.format(
    np.round(G_hat, 2)))

models = [FixedModel(np.eye(n_cond), name='null'),
          ComponentModel(Gc, name='blocks'),
          FreeDirectModel(name='free')]
pcm = GroupCrossvalPCM(run_effect='random', fit_scale=True)
pcm.fit(Y, models, partitions, conditions)

for m, model in enumerate(models):
    logger.info('{}: crossvalidated log-likelihood {:.2f}'.format(
        model.name, pcm.likelihood_[:, m].sum()))
