import math

import torch
import torch.nn as nn
from torch.nn import functional as F

import torchupdates as U

U.utils.compile_mode = None


def warmup_cosine(total_steps: int, warmup_steps: int = 10):
    def _fn(step):
        if step < warmup_steps:
            return (step + 1) / warmup_steps
        progress = (step - warmup_steps) / max(total_steps - warmup_steps, 1)
        return 0.5 * (1 + math.cos(math.pi * progress))

    return _fn


def adamw_step(param, grad, state, lr, schedule, weight_decay: float = 1e-2):
    update, state["mu"], state["nu"] = U.scale_by_adam(grad, state["mu"], state["nu"], state["count"])
    update = U.add_decayed_weights(update, param, decay=weight_decay)
    update = U.scale_by_schedule(update, state["count"], schedule)
    return param + U.scale(update, step=-lr)


def radam_step(param, grad, state, lr):
    grad = U.clip_by_global_norm(grad, max_norm=1.0)
    update, state["mu"], state["nu"] = U.scale_by_radam(grad, state["mu"], state["nu"], state["count"])
    return param + U.scale(update, step=-lr)


def sgd_step(param, grad, state, lr):
    grad = U.centralize(grad) if grad.dim() > 1 else grad
    update, state["trace"] = U.trace(grad, state["trace"], decay=0.9, nesterov=True)
    return param + U.scale(update, step=-lr)


def init_state(param, *names):
    state = {"count": 0}
    for name in names:
        state[name] = U.zeros_like_state(param)
    return state


def main(steps: int = 200, features: int = 16, batch: int = 64):
    torch.manual_seed(0x1239121)
    schedule = warmup_cosine(steps)
    variants = {
        "adamw": (lambda p, g, s: adamw_step(p, g, s, 1e-2, schedule), ("mu", "nu")),
        "radam": (lambda p, g, s: radam_step(p, g, s, 1e-2), ("mu", "nu")),
        "sgd": (lambda p, g, s: sgd_step(p, g, s, 1e-2), ("trace",)),
    }

    for name, (step_fn, slots) in variants.items():
        model = nn.Sequential(nn.Linear(features, features * 4), nn.ReLU(), nn.Linear(features * 4, 1))
        states = {p: init_state(p, *slots) for p in model.parameters()}

        for _ in range(steps):
            data = torch.randn((batch, features))
            target = data.square().mean(1, keepdim=True)
            loss = F.mse_loss(model(data), target)
            model.zero_grad()
            loss.backward()

            with torch.no_grad():
                for p, state in states.items():
                    p.copy_(step_fn(p, p.grad, state))
                    state["count"] += 1

        print(f"{name:>6s}  final loss: {loss.item():.4f}")


if __name__ == "__main__":
    main()
