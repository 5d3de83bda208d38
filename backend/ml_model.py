"""SafePath Backend — XGBoost Safety Regressor

An 8-feature → 1-output regressor trained online from user reports by
safety_service. See config.FEATURE_NAMES for the feature order.

Persisted as <model_dir>/safety_model_xgb.ubj; the service writes
metadata.json next to it.
"""

import logging
from pathlib import Path
from typing import Optional

import numpy as np

from config import FEATURE_NAMES, TRAINING_EPOCHS, VALIDATION_SPLIT

logger = logging.getLogger("safepath.model")

MODEL_FILENAME = "safety_model_xgb.ubj"

DEFAULT_PARAMS = {
    "objective": "reg:squarederror",
    "max_depth": 4,
    "learning_rate": 0.1,
    "subsample": 0.9,
    "reg_lambda": 1.0,
    "min_child_weight": 1,
    "tree_method": "hist",
    "eval_metric": "rmse",
}


class SafetyRegressor:
    """Thin wrapper around an xgboost Booster. Untrained until fit() or load()."""

    def __init__(self, booster=None, params: Optional[dict] = None):
        self._booster = booster
        self.params = {**DEFAULT_PARAMS, **(params or {})}

    @property
    def is_trained(self) -> bool:
        return self._booster is not None

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        epochs: int = TRAINING_EPOCHS,
        validation_split: float = VALIDATION_SPLIT,
        seed: Optional[int] = None,
    ) -> float:
        """Shuffle, hold out a validation slice, train. Returns final training MSE."""
        import xgboost as xgb

        rng = np.random.default_rng(seed)
        indices = rng.permutation(len(X))
        n_val = int(len(X) * validation_split)
        val_idx, train_idx = indices[:n_val], indices[n_val:]

        dtrain = xgb.DMatrix(X[train_idx], label=y[train_idx], feature_names=FEATURE_NAMES)
        evals = [(dtrain, "train")]
        if n_val:
            dval = xgb.DMatrix(X[val_idx], label=y[val_idx], feature_names=FEATURE_NAMES)
            evals.append((dval, "val"))

        params = dict(self.params)
        if seed is not None:
            params["seed"] = seed

        history: dict = {}
        booster = xgb.train(
            params,
            dtrain,
            num_boost_round=epochs,
            evals=evals,
            evals_result=history,
            verbose_eval=False,
        )

        for epoch in range(9, epochs, 10):
            line = f"Epoch {epoch}: mse = {history['train']['rmse'][epoch] ** 2:.4f}"
            if "val" in history:
                line += f", val_mse = {history['val']['rmse'][epoch] ** 2:.4f}"
            logger.debug(line)

        self._booster = booster
        loss = float(history["train"]["rmse"][-1] ** 2)
        logger.info(f"Trained on {len(train_idx)} samples ({n_val} held out), loss {loss:.4f}")
        return loss

    def predict(self, X) -> np.ndarray:
        """Predict safety scores. Returns ndarray shape (n,) in [0, 1]."""
        if self._booster is None:
            raise RuntimeError("SafetyRegressor has not been trained")
        import xgboost as xgb
        if not isinstance(X, np.ndarray):
            X = np.array(X, dtype=np.float32)
        dmat = xgb.DMatrix(X.reshape(-1, len(FEATURE_NAMES)), feature_names=FEATURE_NAMES)
        return np.clip(self._booster.predict(dmat), 0.0, 1.0)

    def save(self, model_dir: Path) -> Path:
        if self._booster is None:
            raise RuntimeError("Refusing to save an untrained model")
        model_dir.mkdir(parents=True, exist_ok=True)
        path = model_dir / MODEL_FILENAME
        self._booster.save_model(str(path))
        return path

    @classmethod
    def load(cls, model_dir: Path) -> Optional["SafetyRegressor"]:
        """Load a persisted model; None when the directory holds no model file."""
        path = model_dir / MODEL_FILENAME
        if not path.exists():
            return None
        import xgboost as xgb
        booster = xgb.Booster()
        booster.load_model(str(path))
        logger.info(f"XGBoost model loaded from {path}")
        return cls(booster)
