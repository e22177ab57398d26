import asyncio
import os
import pathlib
import sys
from typing import Any, Dict, List, Sequence, Tuple

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import kaiproof`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: pairing-heavy tests (skipped unless KAIPROOF_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('KAIPROOF_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set KAIPROOF_RUN_SLOW=1 to enable'))


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------

SCENARIO_CAPSULE: Dict[str, Any] = {
    "v": "KPV-1",
    "pulse": 1000,
    "dayLabel": "Heart",
    "identitySignature": "sig123",
    "identityKey": "phi123",
    "verifierSlug": "1000-sig123",
}

SIMPLE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="64" height="64" viewBox="0 0 64 64">\n'
    '  <circle cx="32" cy="32" r="24" fill="#ffd700"/>\n'
    '</svg>\n'
)

RECEIVER_JWK: Dict[str, str] = {
    "kty": "EC",
    "crv": "P-256",
    "x": "f83OJ3D2xF1Bg8vub9tLe1gHMzV76e8Tus9uPHvRVEU",
    "y": "x_FEzRu9m36HLN_tue659LNpXW6pCyStikYjKIWI5a0",
}


@pytest.fixture
def capsule() -> Dict[str, Any]:
    return dict(SCENARIO_CAPSULE)


@pytest.fixture
def svg_text() -> str:
    return SIMPLE_SVG


@pytest.fixture
def receiver_jwk() -> Dict[str, str]:
    return dict(RECEIVER_JWK)


def run(coro: Any) -> Any:
    """Run a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)


@pytest.fixture
def arun():
    return run


# ---------------------------------------------------------------------------
# Groth16 test vectors
# ---------------------------------------------------------------------------


def make_groth16_vector(public_signals: Sequence[Any], seed: int = 7) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Build a (vkey, proof) pair that satisfies the Groth16 pairing equation.

    All group elements are multiples of the generators with known scalars, so
    C can be solved directly:

        a*b = alpha*beta + X*gamma + c*delta,   X = u0 + sum(x_i * u_i)
    """
    from py_ecc.optimized_bn128 import G1, G2, curve_order, multiply

    from kaiproof.groth16 import g1_to_json, g2_to_json

    alpha, beta, gamma, delta = 3 + seed, 5 + seed, 11 + seed, 13 + seed
    a, b = 17 + seed, 19 + seed
    u: List[int] = [23 + seed + 2 * i for i in range(len(public_signals) + 1)]

    x = u[0] + sum(int(s) * u[i + 1] for i, s in enumerate(public_signals))
    c = (a * b - alpha * beta - x * gamma) * pow(delta, -1, curve_order) % curve_order

    vkey = {
        "protocol": "groth16",
        "curve": "bn128",
        "nPublic": len(public_signals),
        "vk_alpha_1": g1_to_json(multiply(G1, alpha)),
        "vk_beta_2": g2_to_json(multiply(G2, beta)),
        "vk_gamma_2": g2_to_json(multiply(G2, gamma)),
        "vk_delta_2": g2_to_json(multiply(G2, delta)),
        "IC": [g1_to_json(multiply(G1, k)) for k in u],
    }
    proof = {
        "pi_a": g1_to_json(multiply(G1, a)),
        "pi_b": g2_to_json(multiply(G2, b)),
        "pi_c": g1_to_json(multiply(G1, c)),
        "protocol": "groth16",
        "curve": "bn128",
    }
    return vkey, proof


@pytest.fixture
def groth16_vector():
    return make_groth16_vector


@pytest.fixture(autouse=True)
def _isolate_kaiproof_logging():
    """Drop handlers installed by configure_logging so later tests never write to a closed capture stream."""
    import logging

    yield
    root = logging.getLogger("kaiproof")
    for handler in list(root.handlers):
        if getattr(handler, "_kaiproof_installed", False):
            root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
