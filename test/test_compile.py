import torch

import torchupdates
from torchupdates import utils


def test_compile_mode_routes_through_torch_compile(monkeypatch):
    calls = []

    def fake_compile(model=None, **kwargs):
        calls.append(kwargs)
        return lambda fn: fn

    monkeypatch.setattr(torch, "compile", fake_compile)
    monkeypatch.setattr(utils, "compile_mode", "max-autotune-no-cudagraphs")

    x = torch.tensor([1.0, -3.0])
    assert torch.equal(torchupdates.centralize(x), torch.tensor([2.0, -2.0]))
    assert torch.equal(torchupdates.centralize(x), torch.tensor([2.0, -2.0]))
    assert calls == [{"fullgraph": True, "dynamic": False, "mode": "max-autotune-no-cudagraphs"}]

    monkeypatch.setattr(utils, "compile_mode", "default")
    torchupdates.centralize(x)
    assert len(calls) == 2 and calls[-1]["mode"] == "default"


def test_eager_when_compile_mode_is_none(monkeypatch):
    def fail_compile(*args, **kwargs):
        raise AssertionError("torch.compile should not be called")

    monkeypatch.setattr(torch, "compile", fail_compile)
    monkeypatch.setattr(utils, "compile_mode", None)
    x = torch.tensor([1.0, 2.0])
    out, state = torchupdates.trace(x, torch.zeros(2))
    assert torch.equal(out, x)
