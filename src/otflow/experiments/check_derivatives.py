from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, List, Literal, Optional, Tuple

import torch

from otflow.diagnostics.derivatives import (
    autograd_gradient,
    autograd_trace,
    finite_difference_gradient,
    finite_difference_trace,
)
from otflow.potentials.params import ParameterBundle, init_parameters
from otflow.potentials.resnet_kernel import make_kernel

logger = logging.getLogger(__name__)

DtypeName = Literal["float64", "float32"]
_DTYPES: Dict[str, torch.dtype] = {"float64": torch.float64, "float32": torch.float32}
# (autograd_rtol, fd_rtol) used when not given; references are always float64.
_DEFAULT_RTOLS: Dict[str, Tuple[float, float]] = {"float64": (1e-8, 1e-5), "float32": (1e-4, 1e-4)}


@dataclass(frozen=True)
class DerivativeCheckConfig:
    d: int = 3
    m: int = 16
    r: Optional[int] = None
    batch_size: int = 8
    trials: int = 5
    seed: int = 0
    init_scale: float = 0.5
    dtype: DtypeName = "float64"
    fd_step: float = 1e-5
    fd_trace_step: float = 1e-4
    autograd_rtol: Optional[float] = None
    fd_rtol: Optional[float] = None

    def tolerances(self) -> Tuple[float, float]:
        autograd_default, fd_default = _DEFAULT_RTOLS[self.dtype]
        return (
            autograd_default if self.autograd_rtol is None else self.autograd_rtol,
            fd_default if self.fd_rtol is None else self.fd_rtol,
        )


def _set_seed(seed: int) -> None:
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def _rel_err(approx: torch.Tensor, ref: torch.Tensor) -> float:
    num = (approx.to(ref.dtype) - ref).abs().max()
    den = ref.abs().max().clamp_min(1.0)
    return float((num / den).detach().cpu())


def _run_trial(
    cfg: DerivativeCheckConfig,
    *,
    trial: int,
    generator: torch.Generator,
    device: torch.device,
) -> Dict:
    dtype = _DTYPES[cfg.dtype]
    kernel = make_kernel(cfg.d, cfg.m, cfg.r)
    dims = kernel.dims

    cpu_params = init_parameters(dims, generator=generator, dtype=dtype, scale=cfg.init_scale)
    # Non-zero biases exercise the full formulas.
    cpu_params = cpu_params.replace(
        b=torch.randn(dims.augmented, generator=generator, dtype=dtype) * cfg.init_scale,
        b0=torch.randn(dims.m, generator=generator, dtype=dtype) * cfg.init_scale,
        b1=torch.randn(dims.m, generator=generator, dtype=dtype) * cfg.init_scale,
    )
    params = ParameterBundle.from_mapping(cpu_params.as_dict(), dtype=dtype, device=device)
    x = torch.randn(cfg.batch_size, dims.d, generator=generator, dtype=dtype).to(device)
    t = torch.rand(cfg.batch_size, generator=generator, dtype=dtype).to(device)

    grad = kernel.gradient(x, t, params)
    tr = kernel.trace(x, t, params)

    # Same weights and points in float64, so the references add no rounding of their own.
    ref_params = ParameterBundle.from_mapping(params.as_dict(), dtype=torch.float64, device=device)
    x64, t64 = x.to(torch.float64), t.to(torch.float64)

    result = {
        "trial": trial,
        "grad_vs_autograd": _rel_err(grad, autograd_gradient(x64, t64, ref_params)),
        "trace_vs_autograd": _rel_err(tr, autograd_trace(x64, t64, ref_params)),
        "grad_vs_fd": _rel_err(grad, finite_difference_gradient(x64, t64, ref_params, step=cfg.fd_step)),
        "trace_vs_fd": _rel_err(tr, finite_difference_trace(x64, t64, ref_params, step=cfg.fd_trace_step)),
    }
    autograd_rtol, fd_rtol = cfg.tolerances()
    result["ok"] = (
        result["grad_vs_autograd"] <= autograd_rtol
        and result["trace_vs_autograd"] <= autograd_rtol
        and result["grad_vs_fd"] <= fd_rtol
        and result["trace_vs_fd"] <= fd_rtol
    )
    return result


def run_check(
    cfg: DerivativeCheckConfig,
    *,
    out_jsonl: Optional[str] = None,
    device: Optional[str] = None,
) -> List[Dict]:
    _set_seed(cfg.seed)

    if device is None:
        device_t = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    else:
        device_t = torch.device(device)

    g = torch.Generator(device="cpu")
    g.manual_seed(cfg.seed)

    logger.info("Checking closed-form derivatives: %s on %s", cfg, device_t)
    results: List[Dict] = []
    for trial in range(1, cfg.trials + 1):
        r = _run_trial(cfg, trial=trial, generator=g, device=device_t)
        r.update({"config": asdict(cfg), "device": str(device_t)})
        results.append(r)
        print(
            f"[d={cfg.d} m={cfg.m} {cfg.dtype}] trial {trial:03d}/{cfg.trials} | "
            f"grad autograd {r['grad_vs_autograd']:.2e} fd {r['grad_vs_fd']:.2e} | "
            f"trace autograd {r['trace_vs_autograd']:.2e} fd {r['trace_vs_fd']:.2e} | "
            f"{'ok' if r['ok'] else 'FAIL'}"
        )

    if out_jsonl is not None:
        os.makedirs(os.path.dirname(os.path.abspath(out_jsonl)) or ".", exist_ok=True)
        with open(out_jsonl, "a", encoding="utf-8") as f:
            for r in results:
                f.write(json.dumps(r) + "\n")
        print(f"Wrote {len(results)} result(s) to {out_jsonl}")

    return results


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Compare the closed-form OT-Flow gradient and Hessian trace against autograd and finite differences."
    )
    p.add_argument("--d", type=int, default=3, help="Spatial dimension.")
    p.add_argument("--m", type=int, default=16, help="Hidden width.")
    p.add_argument("--r", type=int, default=None, help="Rank of A (default min(10, d)).")
    p.add_argument("--batch_size", type=int, default=8)
    p.add_argument("--trials", type=int, default=5)
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--init_scale", type=float, default=0.5, help="Std of the random weights.")
    p.add_argument("--dtype", type=str, default="float64", choices=sorted(_DTYPES))
    p.add_argument("--fd_step", type=float, default=1e-5, help="Central-difference step for the gradient.")
    p.add_argument("--fd_trace_step", type=float, default=1e-4, help="Second-difference step for the trace.")
    p.add_argument("--autograd_rtol", type=float, default=None, help="Default depends on --dtype.")
    p.add_argument("--fd_rtol", type=float, default=None, help="Default depends on --dtype.")
    p.add_argument("--out_jsonl", type=str, default=None)
    p.add_argument("--device", type=str, default=None, help="Override device, e.g. cuda or cpu.")
    p.add_argument("--verbose", action="store_true", help="Enable INFO logging.")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    cfg = DerivativeCheckConfig(
        d=args.d,
        m=args.m,
        r=args.r,
        batch_size=args.batch_size,
        trials=args.trials,
        seed=args.seed,
        init_scale=args.init_scale,
        dtype=args.dtype,
        fd_step=args.fd_step,
        fd_trace_step=args.fd_trace_step,
        autograd_rtol=args.autograd_rtol,
        fd_rtol=args.fd_rtol,
    )
    results = run_check(cfg, out_jsonl=args.out_jsonl, device=args.device)
    return 0 if all(r["ok"] for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
