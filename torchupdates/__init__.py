from . import updates, utils
from .updates import (
    add_decayed_weights,
    centralize,
    clip,
    clip_by_global_norm,
    scale,
    scale_by_adam,
    scale_by_belief,
    scale_by_radam,
    scale_by_rms,
    scale_by_rss,
    scale_by_schedule,
    scale_by_stddev,
    scale_by_trust_ratio,
    trace,
)
from .utils import ConfigurationError, bias_correction, safe_norm, update_moment, zeros_like_state

__all__ = [
    "scale",
    "scale_by_adam",
    "scale_by_rss",
    "scale_by_rms",
    "scale_by_belief",
    "scale_by_stddev",
    "scale_by_schedule",
    "scale_by_trust_ratio",
    "scale_by_radam",
    "trace",
    "clip",
    "clip_by_global_norm",
    "centralize",
    "add_decayed_weights",
    "update_moment",
    "bias_correction",
    "safe_norm",
    "zeros_like_state",
    "ConfigurationError",
]
