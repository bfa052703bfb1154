import functools
import numbers
import warnings
from typing import Callable, Optional

import numpy as np
import torch
from torch import Tensor
from torch._dynamo.exc import TorchDynamoException
from torch.utils._pytree import tree_map

compile_mode = None  # e.g. "max-autotune-no-cudagraphs"; None runs every kernel eagerly
dynamic = False


class ConfigurationError(ValueError):
    pass


class _Required:
    def __repr__(self):
        return "required"


required = _Required()


def is_compiling():
    try:
        return torch.compiler.is_compiling()
    except TorchDynamoException:
        return True


def decorator_knowngood(func: Callable, fullgraph: bool = True):
    compiled = None
    compiled_mode = None

    @functools.wraps(func)
    def _fn(*args, **kwargs):
        if is_compiling() or compile_mode is None:
            return func(*args, **kwargs)
        nonlocal compiled, compiled_mode
        if compiled is None or compiled_mode != compile_mode:
            compiled = torch.compile(fullgraph=fullgraph, dynamic=dynamic, mode=compile_mode)(func)
            compiled_mode = compile_mode
        return compiled(*args, **kwargs)

    return _fn


def tree_apply(fn):
    def _fn(*args):
        return tree_map(fn, *args)

    return _fn


@tree_apply
def promote(x):
    if isinstance(x, torch.dtype) and x in (torch.bfloat16, torch.float16):
        return torch.float32
    if isinstance(x, Tensor) and x.dtype in (torch.bfloat16, torch.float16):
        return x.float()
    return x


def scalar_guard(*args):
    *xs, ref = args
    out = []
    for x in xs:
        if isinstance(x, float):
            out.append(torch.empty((), dtype=promote(ref.dtype), device=ref.device).fill_(x))
        elif isinstance(x, int):
            out.append(torch.empty((), dtype=torch.int64, device=ref.device).fill_(x))
        else:
            out.append(x)
    if len(xs) == 1:
        return out[0]
    return out


def shape_guard(fn_name: str, x: Tensor, **states: Tensor):
    for name, state in states.items():
        if state.shape != x.shape:
            raise ValueError(
                f"{fn_name}: state `{name}` has shape {tuple(state.shape)}, expected {tuple(x.shape)} to match the input"
            )


def count_guard(fn_name: str, count):
    """
    Python ints are checked for sign. Tensor counts must be 0-d integer tensors; their value is trusted,
    since reading it would force a device sync.
    """
    if isinstance(count, bool) or not isinstance(count, (numbers.Integral, Tensor)):
        raise ConfigurationError(f"{fn_name}: step count must be an int or a tensor, got {type(count).__name__}")
    if isinstance(count, numbers.Integral):
        if count < 0:
            raise ConfigurationError(f"{fn_name}: step count must be non-negative, got {count}")
        return int(count)
    if count.dim() != 0 or count.dtype.is_floating_point or count.dtype.is_complex or count.dtype == torch.bool:
        raise ConfigurationError(
            f"{fn_name}: step count tensor must be a 0-d integer tensor, got shape {tuple(count.shape)} and dtype {count.dtype}"
        )
    return count


def _is_numeric(value):
    if isinstance(value, (bool, np.bool_)):
        return False
    if isinstance(value, Tensor):
        return value.dim() == 0 and not value.dtype.is_complex and value.dtype != torch.bool
    return isinstance(value, (numbers.Real, np.floating, np.integer))


def _resolve(fn_name: str, key: str, value, default):
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"{fn_name}: option `{key}` must be a bool, got {value!r}")
        return value
    if not _is_numeric(value):
        raise ConfigurationError(f"{fn_name}: option `{key}` must be a real scalar, got {value!r}")
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, numbers.Integral):
        return float(value)
    return value


def validate_options(fn_name: str, opts: dict, **defaults):
    """
    Resolves keyword options against a closed set of defaults.

    Keys missing from `opts` take their default, keys whose default is `required` must be given.
    Anything outside `defaults` is rejected, as is a value of the wrong kind. Validation runs before
    any tensor is touched, so a failing call never produces a partial result.
    """
    unknown = sorted(set(opts) - set(defaults))
    if unknown:
        raise ConfigurationError(
            f"{fn_name} got unknown option(s) {', '.join(unknown)}; valid options are {', '.join(defaults) or 'none'}"
        )
    resolved = {}
    for key, default in defaults.items():
        if key not in opts:
            if default is required:
                raise ConfigurationError(f"{fn_name} requires option `{key}`")
            resolved[key] = default
            continue
        resolved[key] = _resolve(fn_name, key, opts[key], default)
    return resolved


_warned = set()


def warn_once(msg):
    if msg not in _warned:
        warnings.warn(msg)
        _warned.add(msg)


def zeros_like_state(x: Tensor, n: int = 1, dtype: Optional[torch.dtype] = None):
    """Fresh zero-initialised state tensors shaped like `x`, one per requested slot."""
    states = [torch.zeros_like(x, dtype=dtype, memory_format=torch.preserve_format) for _ in range(n)]
    if n == 1:
        return states[0]
    return tuple(states)


def update_moment(x: Tensor, moment: Tensor, decay, order=1):
    return (1 - decay) * x**order + decay * moment


def bias_correction(moment: Tensor, decay, count):
    # count is the effective step (>= 1), so the denominator never hits zero
    return moment / (1 - decay**count)


def safe_norm(x: Tensor, min_norm):
    norm = torch.linalg.vector_norm(x)
    below = norm < min_norm
    x = torch.where(below, torch.ones_like(x), x)
    return torch.where(below, torch.as_tensor(min_norm, dtype=norm.dtype, device=norm.device), torch.linalg.vector_norm(x))
