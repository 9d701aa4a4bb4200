"""Stateful managers composed by the engine."""

from .connectivity import ConnectivityManager, ConnectivityState

__all__ = ["ConnectivityManager", "ConnectivityState"]
