"""Probabilistic binary classifiers usable as ensemble members

Every base learner exposes the same small contract (``fit`` / ``predict_proba``)
so that the stacking logic never depends on which fitting library sits behind
a learner.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional
import copy
import logging
import warnings

import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.ensemble import RandomForestClassifier, GradientBoostingClassifier
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.model_selection import GridSearchCV, StratifiedKFold
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from irrmap.errors import EnsembleTrainingError

logger = logging.getLogger(__name__)


class BaseLearner(ABC):
    """Abstract probabilistic binary classifier

    Attributes:
        name (str): Identifier of the learner, used as column name of its
            predictions
    """
    name: str = 'learner'

    @abstractmethod
    def fit(self, X: pd.DataFrame, y: np.ndarray) -> 'BaseLearner':
        """Fit the learner and return self"""
        pass

    @abstractmethod
    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        """Returns a 1D array of P(y == 1) for each row of ``X``"""
        pass

    def safe_fit(self, X: pd.DataFrame, y: np.ndarray) -> 'BaseLearner':
        """Fit, turning any failure or convergence warning into an ``EnsembleTrainingError``

        Convergence warnings are escalated to errors so that no half converged
        learner ever enters an ensemble.
        """
        with warnings.catch_warnings():
            warnings.simplefilter('error', ConvergenceWarning)
            try:
                return self.fit(X, y)
            except EnsembleTrainingError:
                raise
            except Exception as e:
                raise EnsembleTrainingError(self.name, f"{type(e).__name__}: {e}") from e


class GridSearchLearner(BaseLearner):
    """Any scikit-learn classifier tuned by k-fold cross validated grid search

    Args:
        name (str): Learner identifier
        estimator: Unfitted scikit-learn classifier (or pipeline) supporting
            ``predict_proba``
        param_grid (dict): Hyperparameter grid passed to ``GridSearchCV``
        k (int): Number of stratified folds
        seed (int): Seed of the fold shuffling
        scoring (str): Model selection criterion

    Attributes:
        search_ (GridSearchCV): The fitted search, with ``best_params_`` and
            ``cv_results_`` for diagnostics

    Examples:
        >>> import numpy as np
        >>> import pandas as pd
        >>> from sklearn.linear_model import LogisticRegression
        >>> rng = np.random.default_rng(0)
        >>> y = np.repeat([0, 1], 20)
        >>> X = pd.DataFrame({'a': y + rng.normal(0, 0.1, 40)})
        >>> lrn = GridSearchLearner('lr', LogisticRegression(), {'C': [0.1, 1.0]},
        ...                         k=4, seed=0).fit(X, y)
        >>> p = lrn.predict_proba(X)
        >>> p.shape, bool(p[y == 1].min() > p[y == 0].max())
        ((40,), True)
    """
    def __init__(self, name: str, estimator, param_grid: Optional[Dict[str, List[Any]]] = None,
                 k: int = 10, seed: Optional[int] = None, scoring: str = 'roc_auc'):
        self.name = name
        self.estimator = estimator
        self.param_grid = param_grid or {}
        self.k = k
        self.seed = seed
        self.scoring = scoring
        self.search_ = None

    def fit(self, X, y):
        y = np.asarray(y)
        k = min(self.k, int(np.bincount(y, minlength=2).min()))
        if k < 2:
            raise EnsembleTrainingError(self.name, "fewer than 2 units in the minority class")
        cv = StratifiedKFold(n_splits=k, shuffle=True, random_state=self.seed)
        self.search_ = GridSearchCV(clone(self.estimator),
                                    param_grid=self.param_grid,
                                    scoring=self.scoring,
                                    cv=cv,
                                    refit=True,
                                    error_score='raise')
        self.search_.fit(X, y)
        logger.debug("Learner %s tuned on %d folds: %s", self.name, k, self.search_.best_params_)
        return self

    def predict_proba(self, X):
        if self.search_ is None:
            raise RuntimeError(f"Learner '{self.name}' is not fitted")
        return self.search_.predict_proba(X)[:, 1]

    @property
    def best_params(self):
        return self.search_.best_params_

    def __repr__(self):
        return f"GridSearchLearner(name={self.name!r}, k={self.k}, grid={self.param_grid})"


def default_learners(k: int = 10, seed: Optional[int] = None) -> List[BaseLearner]:
    """Bagged trees, boosted trees and a regularized linear model

    Args:
        k (int): Folds of each learner's internal hyperparameter search
        seed (int): Seed shared by the learners and their fold shuffling, so
            that all learners see the same folds

    Returns:
        list: Fresh, unfitted ``GridSearchLearner`` instances
    """
    rf = GridSearchLearner('rf',
                           RandomForestClassifier(n_estimators=200, random_state=seed),
                           {'max_features': [1, 'sqrt'], 'min_samples_leaf': [1, 5]},
                           k=k, seed=seed)
    gbm = GridSearchLearner('gbm',
                            GradientBoostingClassifier(random_state=seed),
                            {'n_estimators': [50, 150], 'max_depth': [1, 3],
                             'learning_rate': [0.1]},
                            k=k, seed=seed)
    glm = GridSearchLearner('glm',
                            make_pipeline(StandardScaler(),
                                          LogisticRegression(max_iter=5000)),
                            {'logisticregression__C': [0.01, 0.1, 1.0]},
                            k=k, seed=seed)
    return [rf, gbm, glm]


def fresh(learners: List[BaseLearner]) -> List[BaseLearner]:
    """Deep copies of ``learners`` so that a training run never mutates its inputs"""
    names = [lrn.name for lrn in learners]
    if len(names) != len(set(names)):
        raise ValueError(f"Learner names must be unique, got {names}")
    return [copy.deepcopy(lrn) for lrn in learners]


if __name__ == "__main__":
    import doctest
    doctest.testmod()
