"""
Pytest configuration for limoncello tests.

Provides small molecules (two- and three-level CO), a seeded point cloud with a spherical shell of sink vertices and
uniform physical models.
"""

import typing as t

import numpy as np
import pytest

from limoncello.config import RunConfig
from limoncello.constants import CLIGHT
from limoncello.grid import PhysicalModel
from limoncello.moldata import CollisionPartner, CollisionPartnerId, MolecularData

# Model radius in m (about 70 au).
RADIUS = 1.0e13


def co_partner(n_levels: int) -> CollisionPartner:
    lower, upper = np.tril_indices(n_levels, k=-1)[1], np.tril_indices(n_levels, k=-1)[0]
    temperatures = np.array([10.0, 20.0, 50.0, 100.0])
    # Rates in m^3 s^-1, mildly temperature dependent.
    down_rates = np.array([[3.0e-17, 3.2e-17, 3.4e-17, 3.6e-17]] * len(lower))
    return CollisionPartner(CollisionPartnerId.H2, temperatures, lower, upper, down_rates)


@pytest.fixture
def co_two_level() -> MolecularData:
    return MolecularData(
        name="CO",
        energies=[0.0, 3.845033],
        weights=[1.0, 3.0],
        upper=[1],
        lower=[0],
        a_einstein=[7.203e-8],
        freq=[115.2712018e9],
        partners=[co_partner(2)],
    )


@pytest.fixture
def co_two_level_radiative() -> MolecularData:
    return MolecularData(
        name="CO",
        energies=[0.0, 3.845033],
        weights=[1.0, 3.0],
        upper=[1],
        lower=[0],
        a_einstein=[7.203e-8],
        freq=[115.2712018e9],
    )


@pytest.fixture
def co_three_level() -> MolecularData:
    return MolecularData(
        name="CO",
        energies=[0.0, 3.845033, 11.534919],
        weights=[1.0, 3.0, 5.0],
        upper=[1, 2],
        lower=[0, 1],
        a_einstein=[7.203e-8, 6.910e-7],
        freq=[115.2712018e9, 230.5380000e9],
        partners=[co_partner(3)],
    )


@pytest.fixture
def cs_two_level() -> MolecularData:
    """A two-level species whose line sits 500 m/s above CO 1-0, i.e. blended with it."""
    freq = 115.2712018e9 * (1.0 + 500.0 / CLIGHT)
    return MolecularData(
        name="CS",
        energies=[0.0, freq / (CLIGHT * 100.0)],
        weights=[1.0, 3.0],
        upper=[1],
        lower=[0],
        a_einstein=[7.2e-8],
        freq=[freq],
    )


def fibonacci_sphere(n: int, radius: float) -> np.ndarray:
    k = np.arange(n) + 0.5
    z = 1.0 - 2.0 * k / n
    r = np.sqrt(1.0 - z ** 2)
    phi = np.pi * (1.0 + 5.0 ** 0.5) * k
    return radius * np.stack([r * np.cos(phi), r * np.sin(phi), z], axis=1)


@pytest.fixture
def sphere_points() -> np.ndarray:
    """80 interior points in a ball of 0.8 RADIUS and a shell of 40 points at RADIUS (the convex hull)."""
    rng = np.random.default_rng(42)
    n_inner = 80
    direction = rng.normal(size=(n_inner, 3))
    direction /= np.linalg.norm(direction, axis=1)[:, None]
    radii = 0.8 * RADIUS * rng.random(n_inner) ** (1.0 / 3.0)
    inner = direction * radii[:, None]
    return np.vstack([inner, fibonacci_sphere(40, RADIUS)])


def uniform_model(
        temperature: float = 20.0,
        density: float = 1.0e10,
        abundance: float | t.Sequence[float] = 1.0e-4,
        doppler: float = 200.0,
        velocity=(0.0, 0.0, 0.0),
        magfield=None,
        dust_opacity=None,
) -> PhysicalModel:
    return PhysicalModel(
        density=lambda x, y, z: [density],
        temperature=lambda x, y, z: [temperature, temperature],
        abundance=lambda x, y, z: np.atleast_1d(abundance),
        doppler=lambda x, y, z: doppler,
        velocity=lambda x, y, z: velocity,
        magfield=None if magfield is None else (lambda x, y, z: magfield),
        dust_opacity=dust_opacity,
    )


@pytest.fixture
def run_config() -> RunConfig:
    return RunConfig(n_threads=2, seed=7, initial_photons_per_neighbour=4, max_photons=200)


@pytest.fixture
def model_radius() -> float:
    return RADIUS


@pytest.fixture
def make_model():
    return uniform_model
