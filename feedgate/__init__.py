"""Gated, anchored feed sealing with one-shot critical action dispatch."""
from __future__ import annotations

from .actions import CriticalAction
from .config import FeedGateConfig, resolve_config
from .dispatcher import CriticalActionDispatcher, DispatchEvidence, DispatchOutcome
from .errors import (
    AlreadyFired,
    AnchorError,
    ConfigError,
    FeedGateError,
    PresenceError,
    QuorumError,
    StateCorruption,
)
from .manifest import Manifest, diff
from .pipeline import PassResult, SealPipeline, SealStage
from .runner import FeedGate, GateReport

__version__: str = "0.1.0"

__all__ = [
    "__version__",
    "AlreadyFired",
    "AnchorError",
    "ConfigError",
    "CriticalAction",
    "CriticalActionDispatcher",
    "DispatchEvidence",
    "DispatchOutcome",
    "FeedGate",
    "FeedGateConfig",
    "FeedGateError",
    "GateReport",
    "Manifest",
    "PassResult",
    "PresenceError",
    "QuorumError",
    "SealPipeline",
    "SealStage",
    "StateCorruption",
    "diff",
    "resolve_config",
]
