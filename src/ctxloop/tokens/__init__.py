"""Token estimation."""

from ctxloop.tokens.estimator import TokenEstimator

__all__ = ["TokenEstimator"]
