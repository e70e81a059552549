"""Stacked generalization of probabilistic binary classifiers

Architecture:
    1. Labelled data are split (label stratified) into a calibration set and a
       held-out validation set.
    2. Each base learner is tuned and fitted on the calibration set, using its
       own k-fold cross validated hyperparameter search. Learners are fitted in
       parallel.
    3. Each fitted learner scores the validation set; one probability column
       per learner forms the meta-feature matrix.
    4. An L2 regularized logistic regression (meta-learner) is fitted on the
       meta-features against the validation labels, again with k-fold cross
       validation of its regularization strength.

The resulting ``FittedEnsemble`` is immutable and is applied read-only to any
feature table carrying the same named covariates (validation set, raster
cells).
"""
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple
import logging
import warnings

import joblib
import numpy as np
import pandas as pd
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegressionCV
from sklearn.metrics import roc_auc_score
from sklearn.model_selection import StratifiedKFold, train_test_split

from irrmap.errors import DataIntegrityError, EnsembleTrainingError
from irrmap.learners import BaseLearner, default_learners, fresh

logger = logging.getLogger(__name__)

STACKED = 'stacked'


@dataclass(frozen=True)
class EnsembleConfig:
    """Training options of the stacked ensemble

    Args:
        k (int): Number of cross validation folds, for base learners and
            meta-learner alike
        validation_size (float): Share of the labelled data held out to fit the
            meta-learner
        seed (int): Seed of every random partition and resampling
        n_jobs (int): Number of learners fitted in parallel (joblib semantics)
    """
    k: int = 10
    validation_size: float = 0.2
    seed: Optional[int] = None
    n_jobs: Optional[int] = None


@dataclass(frozen=True)
class FittedEnsemble:
    """Trained base learners and meta-learner

    Attributes:
        learners (tuple): Fitted base learners, in meta-feature column order
        meta_model (LogisticRegressionCV): Fitted meta-learner
        features (tuple): Covariate names expected by ``predict``
        meta_features (pd.DataFrame): Validation set predictions of the base
            learners the meta-learner was trained on
        meta_labels (np.ndarray): Validation labels paired with ``meta_features``
        config (EnsembleConfig): Options used for training
    """
    learners: Tuple[BaseLearner, ...]
    meta_model: LogisticRegressionCV
    features: Tuple[str, ...]
    meta_features: pd.DataFrame = field(repr=False)
    meta_labels: np.ndarray = field(repr=False)
    config: EnsembleConfig = field(default_factory=EnsembleConfig)

    @property
    def names(self) -> List[str]:
        return [lrn.name for lrn in self.learners]

    def _check_features(self, X: pd.DataFrame) -> pd.DataFrame:
        missing = [f for f in self.features if f not in X.columns]
        if missing:
            raise DataIntegrityError(f"Feature table is missing covariates: {missing}")
        return X.loc[:, list(self.features)]

    def predict_base(self, X: pd.DataFrame) -> pd.DataFrame:
        """Per-learner probabilities of the positive class"""
        X = self._check_features(X)
        if len(X) == 0:
            return pd.DataFrame({name: np.empty(0) for name in self.names}, index=X.index)
        return pd.DataFrame({lrn.name: lrn.predict_proba(X) for lrn in self.learners},
                            index=X.index)

    def predict(self, X: pd.DataFrame) -> pd.DataFrame:
        """Per-learner and stacked probabilities of the positive class

        Args:
            X (pd.DataFrame): Feature table with (at least) the training covariates.
                Must be complete; missing value handling is the caller's concern
                (see ``irrmap.scoring.score_stack``)

        Returns:
            pd.DataFrame: One column per base learner plus a ``stacked`` column,
            all in [0, 1], indexed like ``X``
        """
        base = self.predict_base(X)
        if len(base) == 0:
            base[STACKED] = np.empty(0)
            return base
        base[STACKED] = self.meta_model.predict_proba(base[self.names].to_numpy())[:, 1]
        return base

    def evaluate(self, X: pd.DataFrame, y) -> Dict[str, float]:
        """Area under the ROC curve of every learner and of the stacked model"""
        return evaluate(self, X, y)

    @property
    def meta_coefficients(self) -> Dict[str, float]:
        """Meta-learner weights of each base learner (logit scale)"""
        return dict(zip(self.names, self.meta_model.coef_[0]))

    def save(self, path):
        """Persist the fitted ensemble with joblib"""
        joblib.dump(self, path)

    @classmethod
    def load(cls, path) -> 'FittedEnsemble':
        obj = joblib.load(path)
        if not isinstance(obj, cls):
            raise TypeError(f"{path} does not contain a {cls.__name__}")
        return obj


def _fit_learner(learner: BaseLearner, X: pd.DataFrame, y: np.ndarray) -> BaseLearner:
    return learner.safe_fit(X, y)


def fit_meta(meta_features: pd.DataFrame, y: np.ndarray, k: int = 10,
             seed: Optional[int] = None) -> LogisticRegressionCV:
    """Fit the L2 logistic meta-learner with k-fold selection of its penalty

    The number of folds is reduced to the minority class count when the
    validation set is too small for ``k`` stratified folds.
    """
    y = np.asarray(y)
    n_min = int(np.bincount(y, minlength=2).min())
    if n_min < 2:
        raise EnsembleTrainingError(STACKED, "validation set has fewer than 2 units in a class")
    if n_min < k:
        logger.warning("Reducing meta-learner folds from %d to %d (smallest class size)",
                       k, n_min)
        k = n_min
    meta = LogisticRegressionCV(Cs=np.logspace(-3, 2, 11),
                                cv=StratifiedKFold(n_splits=k, shuffle=True, random_state=seed),
                                scoring='neg_log_loss',
                                max_iter=5000)
    with warnings.catch_warnings():
        warnings.simplefilter('error', ConvergenceWarning)
        try:
            meta.fit(meta_features.to_numpy(), y)
        except Exception as e:
            raise EnsembleTrainingError(STACKED, f"{type(e).__name__}: {e}") from e
    return meta


def train_ensemble(X: pd.DataFrame, y, learners: Optional[List[BaseLearner]] = None,
                   config: EnsembleConfig = EnsembleConfig()) -> FittedEnsemble:
    """Train base learners and stack them with a logistic meta-learner

    Args:
        X (pd.DataFrame): Complete covariate table (named columns)
        y (array-like): Binary 0/1 labels aligned with ``X``
        learners (list): Base learners. Defaults to
            :func:`irrmap.learners.default_learners`
        config (EnsembleConfig): Folds, split proportion, seed and parallelism

    Raises:
        EnsembleTrainingError: If any learner, or the meta-learner, fails. No
            partial ensemble is ever returned

    Returns:
        FittedEnsemble
    """
    y = np.asarray(y).astype(int)
    if X.isna().any().any():
        raise DataIntegrityError("Feature table contains missing values")
    if len(X) != len(y):
        raise DataIntegrityError(f"{len(X)} feature rows but {len(y)} labels")
    if set(np.unique(y)) != {0, 1}:
        raise DataIntegrityError("Labels must contain both classes encoded as 0 and 1")
    if learners is None:
        learners = default_learners(k=config.k, seed=config.seed)
    learners = fresh(learners)

    X_cal, X_val, y_cal, y_val = train_test_split(X, y,
                                                  test_size=config.validation_size,
                                                  stratify=y,
                                                  random_state=config.seed)
    logger.info("Training %d base learners on %d calibration units (%d held out)",
                len(learners), len(X_cal), len(X_val))
    fitted = joblib.Parallel(n_jobs=config.n_jobs)(
        joblib.delayed(_fit_learner)(lrn, X_cal, y_cal) for lrn in learners)

    meta_features = pd.DataFrame({lrn.name: lrn.predict_proba(X_val) for lrn in fitted},
                                 index=X_val.index)
    meta = fit_meta(meta_features, y_val, k=config.k, seed=config.seed)
    model = FittedEnsemble(learners=tuple(fitted),
                           meta_model=meta,
                           features=tuple(X.columns),
                           meta_features=meta_features,
                           meta_labels=y_val,
                           config=config)
    logger.info("Stacked ensemble trained; meta-learner weights %s", model.meta_coefficients)
    return model


def train(features: pd.DataFrame, labels, k: int = 10, seed: Optional[int] = None) -> FittedEnsemble:
    """Train the default learners with ``k`` folds (see :func:`train_ensemble`)"""
    return train_ensemble(features, labels, config=EnsembleConfig(k=k, seed=seed))


def predict(model: FittedEnsemble, X: pd.DataFrame) -> pd.DataFrame:
    """Functional alias of :meth:`FittedEnsemble.predict`"""
    return model.predict(X)


def evaluate(model: FittedEnsemble, X: pd.DataFrame, y) -> Dict[str, float]:
    """ROC AUC of each base learner and of the stacked prediction

    Args:
        model (FittedEnsemble): Trained ensemble
        X (pd.DataFrame): Feature table
        y (array-like): 0/1 labels

    Returns:
        dict: ``{column: auc}`` for every learner and ``'stacked'``
    """
    y = np.asarray(y).astype(int)
    preds = model.predict(X)
    return {col: float(roc_auc_score(y, preds[col])) for col in preds.columns}
