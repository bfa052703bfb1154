from typing import Callable

import torch
from torch import Tensor

from . import utils
from .utils import bias_correction, decorator_knowngood, promote, safe_norm, scalar_guard, update_moment


@decorator_knowngood
def _compilable_scale(x: Tensor, step: Tensor):
    return (promote(x) * step).to(x.dtype)


def scale(x: Tensor, **opts) -> Tensor:
    """
    Multiplies the input by a fixed step size. `step` is required; pass a negative value to turn a
    transformed gradient into a descent update.
    """
    opts = utils.validate_options("scale", opts, step=utils.required)
    step = scalar_guard(opts["step"], x)
    return _compilable_scale(x, step)


@decorator_knowngood
def _compilable_adam(x: Tensor, mu: Tensor, nu: Tensor, count: Tensor, b1: Tensor, b2: Tensor, eps: Tensor, eps_root: Tensor):
    x32, mu32, nu32 = promote((x, mu, nu))
    mu32 = update_moment(x32, mu32, b1, 1)
    nu32 = update_moment(x32, nu32, b2, 2)
    count_inc = count + 1
    mu_hat = bias_correction(mu32, b1, count_inc)
    nu_hat = bias_correction(nu32, b2, count_inc)
    out = mu_hat / ((nu_hat + eps_root).sqrt() + eps)
    return out.to(x.dtype), mu32.to(mu.dtype), nu32.to(nu.dtype)


def scale_by_adam(x: Tensor, mu: Tensor, nu: Tensor, count, **opts):
    """
    Adam (https://arxiv.org/abs/1412.6980). Returns `(update, mu, nu)`.

    b1: first moment decay (0.9)
    b2: second moment decay (0.999)
    eps: added to the denominator, outside the square root (1e-8)
    eps_root: added to the bias-corrected second moment, inside the square root (0.0)
    """
    opts = utils.validate_options("scale_by_adam", opts, b1=0.9, b2=0.999, eps=1e-8, eps_root=0.0)
    count = utils.count_guard("scale_by_adam", count)
    utils.shape_guard("scale_by_adam", x, mu=mu, nu=nu)
    count, b1, b2, eps, eps_root = scalar_guard(count, opts["b1"], opts["b2"], opts["eps"], opts["eps_root"], x)
    return _compilable_adam(x, mu, nu, count, b1, b2, eps, eps_root)


@decorator_knowngood
def _compilable_rss(x: Tensor, sum_of_squares: Tensor, eps: Tensor):
    x32, ss32 = promote((x, sum_of_squares))
    ss32 = x32.square() + ss32
    inv_sqrt = torch.where(ss32 > 0, (ss32 + eps).rsqrt(), torch.zeros_like(ss32))
    return (inv_sqrt * x32).to(x.dtype), ss32.to(sum_of_squares.dtype)


def scale_by_rss(x: Tensor, sum_of_squares: Tensor, **opts):
    """Scales by the inverse root of the undecayed sum of all squared inputs (AdaGrad)."""
    opts = utils.validate_options("scale_by_rss", opts, eps=1e-7)
    utils.shape_guard("scale_by_rss", x, sum_of_squares=sum_of_squares)
    eps = scalar_guard(opts["eps"], x)
    return _compilable_rss(x, sum_of_squares, eps)


@decorator_knowngood
def _compilable_rms(x: Tensor, nu: Tensor, decay: Tensor, eps: Tensor):
    x32, nu32 = promote((x, nu))
    nu32 = update_moment(x32, nu32, decay, 2)
    return (x32 * (nu32 + eps).rsqrt()).to(x.dtype), nu32.to(nu.dtype)


def scale_by_rms(x: Tensor, nu: Tensor, **opts):
    # RMSProp keeps its second moment uncorrected, unlike Adam
    opts = utils.validate_options("scale_by_rms", opts, decay=0.9, eps=1e-8)
    utils.shape_guard("scale_by_rms", x, nu=nu)
    decay, eps = scalar_guard(opts["decay"], opts["eps"], x)
    return _compilable_rms(x, nu, decay, eps)


@decorator_knowngood
def _compilable_belief(
    x: Tensor, mu: Tensor, nu: Tensor, count: Tensor, b1: Tensor, b2: Tensor, eps: Tensor, eps_root: Tensor
):
    x32, mu32, nu32 = promote((x, mu, nu))
    mu32 = update_moment(x32, mu32, b1, 1)
    pred_error = x32 - mu32
    nu32 = update_moment(pred_error, nu32, b2, 2)
    count_inc = count + 1
    mu_hat = bias_correction(mu32, b1, count_inc)
    nu_hat = bias_correction(nu32, b2, count_inc)
    out = mu_hat / ((nu_hat + eps_root).sqrt() + eps)
    return out.to(x.dtype), mu32.to(mu.dtype), nu32.to(nu.dtype)


def scale_by_belief(x: Tensor, mu: Tensor, nu: Tensor, count, **opts):
    """
    AdaBelief (https://arxiv.org/abs/2010.07468). Returns `(update, mu, nu)`.

    The second moment tracks the squared prediction error `x - mu` rather than `x`. Note that the
    stability defaults are the reverse of Adam's: eps=0.0 outside the root, eps_root=1e-16 inside.
    """
    opts = utils.validate_options("scale_by_belief", opts, b1=0.9, b2=0.999, eps=0.0, eps_root=1e-16)
    count = utils.count_guard("scale_by_belief", count)
    utils.shape_guard("scale_by_belief", x, mu=mu, nu=nu)
    count, b1, b2, eps, eps_root = scalar_guard(count, opts["b1"], opts["b2"], opts["eps"], opts["eps_root"], x)
    return _compilable_belief(x, mu, nu, count, b1, b2, eps, eps_root)


@decorator_knowngood
def _compilable_stddev(x: Tensor, mu: Tensor, nu: Tensor, decay: Tensor, eps: Tensor):
    x32, mu32, nu32 = promote((x, mu, nu))
    mu32 = update_moment(x32, mu32, decay, 1)
    nu32 = update_moment(x32, nu32, decay, 2)
    # not clamped: nu - mu^2 can round slightly below zero when the variance vanishes
    out = x32 * (nu32 - mu32.square() + eps).rsqrt()
    return out.to(x.dtype), mu32.to(mu.dtype), nu32.to(nu.dtype)


def scale_by_stddev(x: Tensor, mu: Tensor, nu: Tensor, **opts):
    """Centered RMSProp: scales by the inverse root of the EMA variance. Returns `(update, mu, nu)`."""
    opts = utils.validate_options("scale_by_stddev", opts, decay=0.9, eps=1e-8)
    utils.shape_guard("scale_by_stddev", x, mu=mu, nu=nu)
    decay, eps = scalar_guard(opts["decay"], opts["eps"], x)
    return _compilable_stddev(x, mu, nu, decay, eps)


def scale_by_schedule(x: Tensor, count, schedule_fn: Callable) -> Tensor:
    if not callable(schedule_fn):
        raise utils.ConfigurationError(f"scale_by_schedule: schedule_fn must be callable, got {schedule_fn!r}")
    count = utils.count_guard("scale_by_schedule", count)
    step_size = schedule_fn(count)
    return (promote(x) * step_size).to(x.dtype)


@decorator_knowngood
def _compilable_trust_ratio(x: Tensor, g: Tensor, min_norm: Tensor):
    x32, g32 = promote((x, g))
    param_norm = safe_norm(x32, min_norm)
    update_norm = safe_norm(g32, min_norm)
    trust_ratio = param_norm / update_norm

    zero_norm = (torch.linalg.vector_norm(x32) == 0) | (torch.linalg.vector_norm(g32) == 0)
    trust_ratio = torch.where(zero_norm, torch.ones_like(trust_ratio), trust_ratio)
    return (x32 * trust_ratio).to(x.dtype)


def scale_by_trust_ratio(x: Tensor, g: Tensor, **opts) -> Tensor:
    """
    Layer-wise trust ratio scaling as in LAMB (https://arxiv.org/abs/1904.00962).

    Multiplies `x` by `||x|| / ||g||`, with both norms floored at `min_norm`. If either tensor is
    exactly zero the ratio is 1, so the output is never NaN.
    """
    opts = utils.validate_options("scale_by_trust_ratio", opts, min_norm=0.0)
    utils.shape_guard("scale_by_trust_ratio", x, g=g)
    min_norm = scalar_guard(opts["min_norm"], x)
    return _compilable_trust_ratio(x, g, min_norm)


def _radam_max_ro(b2: float):
    ro_inf = 2.0 / (1 - b2) - 1
    return (ro_inf - 2) * b2 / (1 - b2)


@decorator_knowngood
def _compilable_radam(
    x: Tensor,
    mu: Tensor,
    nu: Tensor,
    count: Tensor,
    b1: Tensor,
    b2: Tensor,
    eps: Tensor,
    eps_root: Tensor,
    threshold: Tensor,
):
    x32, mu32, nu32 = promote((x, mu, nu))
    ro_inf = 2.0 / (1 - b2) - 1
    mu32 = update_moment(x32, mu32, b1, 1)
    nu32 = update_moment(x32, nu32, b2, 2)
    count_inc = count + 1
    b2t = b2**count_inc
    ro = (ro_inf - 2) * count_inc * b2t / (1 - b2t)
    mu_hat = bias_correction(mu32, b1, count_inc)
    nu_hat = bias_correction(nu32, b2, count_inc)

    # ro is a scalar, so this selects one formula for the whole tensor
    rectify = ro >= threshold
    safe_ro = torch.where(rectify, ro, ro_inf)
    r = ((safe_ro - 4) * (safe_ro - 2) * ro_inf / ((ro_inf - 4) * (ro_inf - 2) * safe_ro)).sqrt()
    rectified = r * mu_hat / ((nu_hat + eps_root).sqrt() + eps)
    out = torch.where(rectify, rectified, mu_hat)
    return out.to(x.dtype), mu32.to(mu.dtype), nu32.to(nu.dtype)


def scale_by_radam(x: Tensor, mu: Tensor, nu: Tensor, count, **opts):
    """
    Rectified Adam (https://arxiv.org/abs/1908.03265). Returns `(update, mu, nu)`.

    While the variance estimate `ro` is below `threshold`, the update is the bias-corrected first
    moment alone; once it is reached, the adaptive denominator is applied with rectification term `r`.
    """
    opts = utils.validate_options(
        "scale_by_radam", opts, b1=0.9, b2=0.999, eps=1e-8, eps_root=0.0, threshold=5.0
    )
    count = utils.count_guard("scale_by_radam", count)
    utils.shape_guard("scale_by_radam", x, mu=mu, nu=nu)
    b2, threshold = opts["b2"], opts["threshold"]
    if isinstance(b2, float) and isinstance(threshold, float) and 0 < b2 < 1 and _radam_max_ro(b2) < threshold:
        utils.warn_once(
            f"scale_by_radam: with b2={b2}, ro never reaches threshold={threshold}; "
            "updates will always be the bias-corrected first moment"
        )
    count, b1, b2, eps, eps_root, threshold = scalar_guard(
        count, opts["b1"], b2, opts["eps"], opts["eps_root"], threshold, x
    )
    return _compilable_radam(x, mu, nu, count, b1, b2, eps, eps_root, threshold)


@decorator_knowngood
def _compilable_trace(x: Tensor, trace: Tensor, decay: Tensor, nesterov: bool):
    x32, t32 = promote((x, trace))
    t32 = x32 + decay * t32
    if nesterov:
        out = x32 + decay * t32
    else:
        out = t32
    return out.to(x.dtype), t32.to(trace.dtype)


def trace(x: Tensor, trace: Tensor, **opts):
    """
    Momentum. Returns `(update, trace)`; with `nesterov=True` the update looks one step ahead along
    the new trace.
    """
    opts = utils.validate_options("trace", opts, decay=0.9, nesterov=False)
    utils.shape_guard("trace", x, trace=trace)
    decay = scalar_guard(opts["decay"], x)
    return _compilable_trace(x, trace, decay, opts["nesterov"])


@decorator_knowngood
def _compilable_clip(x: Tensor, delta: Tensor):
    return promote(x).clamp(min=-delta, max=delta).to(x.dtype)


def clip(x: Tensor, **opts) -> Tensor:
    opts = utils.validate_options("clip", opts, delta=2.0)
    delta = scalar_guard(opts["delta"], x)
    return _compilable_clip(x, delta)


@decorator_knowngood
def _compilable_clip_by_global_norm(x: Tensor, max_norm: Tensor):
    x32 = promote(x)
    g_norm = x32.square().sum().sqrt()
    out = torch.where(g_norm <= max_norm, x32, x32 / g_norm * max_norm)
    return out.to(x.dtype)


def clip_by_global_norm(x: Tensor, **opts) -> Tensor:
    opts = utils.validate_options("clip_by_global_norm", opts, max_norm=1.0)
    max_norm = scalar_guard(opts["max_norm"], x)
    return _compilable_clip_by_global_norm(x, max_norm)


@decorator_knowngood
def _compilable_centralize(x: Tensor):
    x32 = promote(x)
    return (x32 - x32.mean()).to(x.dtype)


def centralize(x: Tensor) -> Tensor:
    return _compilable_centralize(x)


@decorator_knowngood
def _compilable_add_decayed_weights(x: Tensor, params: Tensor, decay: Tensor):
    x32, p32 = promote((x, params))
    return (x32 + decay * p32).to(x.dtype)


def add_decayed_weights(x: Tensor, params: Tensor, **opts) -> Tensor:
    # decoupled weight decay, applied to the update before the learning rate (AdamW, LAMB)
    opts = utils.validate_options("add_decayed_weights", opts, decay=0.0)
    utils.shape_guard("add_decayed_weights", x, params=params)
    decay = scalar_guard(opts["decay"], x)
    return _compilable_add_decayed_weights(x, params, decay)
