from __future__ import annotations

import dataclasses
import math

import pytest
import torch

from conftest import random_params
from otflow.diagnostics.derivatives import (
    autograd_gradient,
    autograd_trace,
    finite_difference_gradient,
    finite_difference_trace,
)
from otflow.errors import NumericError, ShapeError
from otflow.potentials.params import ParameterBundle
from otflow.potentials.resnet_kernel import (
    activation_trace,
    evaluate,
    gradient,
    make_kernel,
    potential,
    resnet_forward,
    trace,
)


def _fixture_params(b0=(0.0, 0.0, 0.0)) -> ParameterBundle:
    # d=2, m=3, r=1. Rows of K1 sum to one and its columns sum to one.
    return ParameterBundle.from_mapping(
        {
            "w": [0.1, 0.1, 0.1],
            "A": [[0.1, 0.1, 0.1]],
            "b": [0.0, 0.0, 0.0],
            "c": 0.0,
            "K0": [[0.1, 0.2, 0.3], [0.2, 0.1, 0.0], [0.0, 0.3, 0.1]],
            "K1": [[0.5, 0.5, 0.0], [0.0, 0.5, 0.5], [0.5, 0.0, 0.5]],
            "b0": list(b0),
            "b1": [0.0, 0.0, 0.0],
        }
    )


def test_regression_fixture_at_origin() -> None:
    params = _fixture_params()
    x = torch.zeros(2, dtype=torch.float64)

    v, div = make_kernel(2, 3, 1).evaluate(x, 0.0, params)

    # u0 = log 2, tanh(log 2) = 0.6, z1 = 0.1 + 0.6 * 0.1 = 0.16, J = 0.
    # trace = 0.16 * (0.05 + 0.05 + 0.09) + (0.1² + 0.1²) = 0.0504
    torch.testing.assert_close(v, torch.zeros(2, dtype=torch.float64))
    torch.testing.assert_close(div, torch.tensor(-0.0504, dtype=torch.float64))
    torch.testing.assert_close(potential(x, 0.0, params), torch.tensor(0.3 * math.log(5.0), dtype=torch.float64))


def test_regression_fixture_off_origin() -> None:
    # At x = [1, 0], t = 0 these biases put every first-layer pre-activation at ln 2.
    ln2 = math.log(2.0)
    params = _fixture_params(b0=(ln2 - 0.1, ln2 - 0.2, ln2))
    x = torch.tensor([1.0, 0.0], dtype=torch.float64)

    v, div = make_kernel(2, 3, 1).evaluate(x, 0.0, params)

    # σ'(pre0) = 0.6, σ''(pre0) = 0.64, u0 = ln 2.5, pre1 = ln 2.5,
    # σ'(pre1) = 21/29, σ''(pre1) = 400/841, z1 = 5/29.
    # z0 = (3/29) * K0 column sums, AᵀA s = 0.01.
    # t0 = 0.64 * 5/29 * 0.19, t1 = 400/841 * 0.1 * 0.0576, trace_A = 0.02.
    expected_grad = torch.tensor([0.9 / 29 + 0.01, 1.8 / 29 + 0.01], dtype=torch.float64)
    expected_trace = 0.608 / 29 + 2.304 / 841 + 0.02
    torch.testing.assert_close(v, -expected_grad)
    torch.testing.assert_close(div, torch.tensor(-expected_trace, dtype=torch.float64))
    torch.testing.assert_close(
        potential(x, 0.0, params), torch.tensor(0.3 * math.log(7.25) + 0.005, dtype=torch.float64)
    )


def test_gradient_matches_autograd(params, points, times) -> None:
    expected = autograd_gradient(points, times, params)
    torch.testing.assert_close(gradient(points, times, params, 3), expected, rtol=1e-10, atol=1e-12)


def test_trace_matches_autograd(params, points, times) -> None:
    expected = autograd_trace(points, times, params)
    torch.testing.assert_close(trace(points, times, params, 3), expected, rtol=1e-10, atol=1e-12)


@pytest.mark.parametrize("d, m, r", [(1, 1, 1), (2, 5, 1), (4, 3, 2), (12, 7, None)])
def test_closed_forms_match_finite_differences(d: int, m: int, r) -> None:
    params = random_params(d, m, r, seed=d * 100 + m)
    g = torch.Generator().manual_seed(7)
    x = torch.randn(4, d, generator=g, dtype=torch.float64)
    t = 0.3

    grad = gradient(x, t, params, d)
    tr = trace(x, t, params, d)

    torch.testing.assert_close(grad, finite_difference_gradient(x, t, params, step=1e-5), rtol=1e-5, atol=1e-7)
    torch.testing.assert_close(tr, finite_difference_trace(x, t, params, step=1e-4), rtol=1e-4, atol=1e-5)


def test_zero_parameters_give_constant_potential() -> None:
    params = random_params(3, 4, seed=2)
    zero = params.replace(
        w=torch.zeros_like(params.w),
        A=torch.zeros_like(params.A),
        b=torch.zeros_like(params.b),
        K0=torch.zeros_like(params.K0),
        K1=torch.zeros_like(params.K1),
    )
    x = torch.randn(6, 3, generator=torch.Generator().manual_seed(0), dtype=torch.float64)
    t = torch.linspace(-1.0, 1.0, 6, dtype=torch.float64)

    torch.testing.assert_close(potential(x, t, zero), torch.full((6,), float(params.c), dtype=torch.float64))
    torch.testing.assert_close(gradient(x, t, zero, 3), torch.zeros(6, 3, dtype=torch.float64))
    torch.testing.assert_close(trace(x, t, zero, 3), torch.zeros(6, dtype=torch.float64))


def test_quadratic_trace_is_squared_norm_of_spatial_columns() -> None:
    params = random_params(4, 3, 3, seed=5)
    only_a = params.replace(w=torch.zeros_like(params.w), K0=torch.zeros_like(params.K0))
    x = torch.randn(4, dtype=torch.float64)

    expected = sum(float(params.A[:, j].norm() ** 2) for j in range(4))
    assert float(trace(x, 2.0, only_a, 4)) == pytest.approx(expected, rel=1e-12)


def test_potential_matches_explicit_quadratic_form(params, points, times) -> None:
    s = torch.cat([points, times.unsqueeze(-1)], dim=-1)
    AtA = params.A.T @ params.A
    u1 = resnet_forward(points, times, params)
    expected = u1 @ params.w + 0.5 * ((s @ AtA) * s).sum(-1) + s @ params.b + params.c

    torch.testing.assert_close(potential(points, times, params), expected)


def test_batched_matches_unbatched(params, points, times) -> None:
    v, div = evaluate(points, times, params, 3)
    for i in range(points.shape[0]):
        vi, divi = evaluate(points[i], times[i], params, 3)
        assert vi.shape == (3,)
        assert divi.shape == ()
        torch.testing.assert_close(vi, v[i])
        torch.testing.assert_close(divi, div[i])


def test_scalar_time_broadcasts_over_batch(params, points) -> None:
    by_scalar = trace(points, 0.25, params, 3)
    by_vector = trace(points, torch.full((5,), 0.25, dtype=torch.float64), params, 3)
    torch.testing.assert_close(by_scalar, by_vector)


def test_evaluate_is_negated_gradient_and_trace(params, points, times) -> None:
    v, div = evaluate(points, times, params, 3)
    torch.testing.assert_close(v, -gradient(points, times, params, 3))
    torch.testing.assert_close(div, -trace(points, times, params, 3))


def test_evaluate_is_deterministic(params, points) -> None:
    first = evaluate(points, 1.0, params, 3)
    evaluate(points, -3.0, params, 3)
    second = evaluate(points, 1.0, params, 3)
    assert torch.equal(first[0], second[0])
    assert torch.equal(first[1], second[1])


def test_reused_activation_trace_gives_same_results(params, points, times) -> None:
    acts = activation_trace(points, times, params)
    assert torch.equal(gradient(points, times, params, 3, acts=acts), gradient(points, times, params, 3))
    assert torch.equal(trace(points, times, params, 3, acts=acts), trace(points, times, params, 3))


def test_activation_trace_from_other_dims_is_rejected(params) -> None:
    other = random_params(2, 6)
    acts = activation_trace(torch.zeros(2, dtype=torch.float64), 0.0, other)
    with pytest.raises(ShapeError):
        gradient(torch.zeros(3, dtype=torch.float64), 0.0, params, 3, acts=acts)


def test_resnet_forward_with_zero_weights() -> None:
    params = random_params(2, 4, biases=False)
    zero = params.replace(K0=torch.zeros_like(params.K0), K1=torch.zeros_like(params.K1))
    u1 = resnet_forward(torch.tensor([3.0, -1.0], dtype=torch.float64), 5.0, zero)
    torch.testing.assert_close(u1, torch.full((4,), 2.0 * math.log(2.0), dtype=torch.float64))


def test_activation_is_stable_for_large_inputs() -> None:
    params = random_params(2, 3, seed=9)
    x = torch.tensor([1e4, -1e4], dtype=torch.float64)
    assert torch.isfinite(potential(x, 0.0, params))
    assert torch.isfinite(trace(x, 0.0, params, 2))


@pytest.mark.parametrize(
    "x, t",
    [
        (torch.zeros(4, dtype=torch.float64), 0.0),
        (torch.zeros(2, 2, dtype=torch.float64), 0.0),
        (torch.zeros(3, dtype=torch.float64), torch.zeros(3, dtype=torch.float64)),
        (torch.zeros(5, 3, dtype=torch.float64), torch.zeros(4, dtype=torch.float64)),
        (torch.zeros(1, 1, 3, dtype=torch.float64), 0.0),
    ],
)
def test_bad_input_shapes_raise_shape_error(params, x, t) -> None:
    with pytest.raises(ShapeError):
        evaluate(x, t, params, 3)


def test_requested_dimension_must_match_parameters(params) -> None:
    with pytest.raises(ShapeError):
        gradient(torch.zeros(2, dtype=torch.float64), 0.0, params, 2)


def test_non_floating_or_mismatched_dtype_raises_type_error(params) -> None:
    with pytest.raises(TypeError):
        potential(torch.zeros(3, dtype=torch.long), 0.0, params)
    with pytest.raises(TypeError):
        potential(torch.zeros(3, dtype=torch.float32), 0.0, params)


def test_non_finite_results_raise_numeric_error(params) -> None:
    x = torch.zeros(3, dtype=torch.float64)
    with pytest.raises(NumericError):
        potential(x, 0.0, params.replace(c=torch.tensor(float("inf"), dtype=torch.float64)))
    with pytest.raises(NumericError):
        gradient(x, 0.0, params.replace(b=torch.full((4,), float("nan"), dtype=torch.float64)), 3)
    with pytest.raises(NumericError):
        trace(x, 0.0, params.replace(A=torch.full_like(params.A, float("inf"))), 3)


def test_bound_potential_matches_functional_form(params, points, times) -> None:
    pot = make_kernel(3, 6).bind(params)
    v, div = pot.evaluate(points, times)
    torch.testing.assert_close(pot.phi(points, times), potential(points, times, params))
    torch.testing.assert_close(v, -pot.grad(points, times))
    torch.testing.assert_close(div, -pot.trace(points, times))


def test_bind_rejects_mismatched_bundle(params) -> None:
    bad = dataclasses.replace(params, K1=torch.zeros(6, 5, dtype=torch.float64))
    with pytest.raises(ShapeError):
        make_kernel(3, 6).bind(bad)
