"""
Tests for image synthesis.
"""

import numpy as np
import pytest
from astropy import units as u

from limoncello.config import RunConfig
from limoncello.constants import PC
from limoncello.errors import ConvergenceFailure, GeometryError, RayTraceDegenerate
from limoncello.grid import Grid
from limoncello.image import Image, ImageConfig, ImageUnit
from limoncello.levelpops import ConvergenceState
from limoncello.mesh import Mesh
from limoncello.moldata import line_blend
from limoncello.pipeline import run
from limoncello.raytrace import RayTracer


@pytest.fixture
def config():
    return RunConfig(n_threads=2, seed=9, lte_only=True)


@pytest.fixture
def static_grid(sphere_points, co_two_level, config, make_model):
    return Grid.from_model(Mesh.from_points(sphere_points), make_model(), [co_two_level], config)


def dusty_grid(points, mol, config, model_factory, magfield=None):
    return Grid.from_model(
        Mesh.from_points(points), model_factory(magfield=magfield, dust_opacity=lambda nu: 1.0e3 * nu / 1.0e11),
        [mol], config,
    )


def test_line_image_is_symmetric(static_grid):
    """A static, uniform sphere gives a spectrum symmetric about the line centre."""
    image = ImageConfig(pxls=5, imgres=40.0, distance=PC, nchan=11, velres=100.0, trans=0)
    result = RayTracer(static_grid).trace(image)
    assert result.intensity.shape == (5, 5, 11)
    np.testing.assert_allclose(result.intensity, result.intensity[:, :, ::-1], rtol=1e-9, atol=0.0)

    centre = result.intensity[2, 2]
    assert centre[5] > 0.0
    assert np.argmax(centre) == 5
    assert np.all(np.diff(centre[5:]) <= 0.0)
    assert np.all(result.tau[2, 2] >= 0.0)
    # Corner pixels lie outside the sphere.
    assert result.n_missed > 0
    assert np.all(result.intensity[0, 0] == 0.0)
    np.testing.assert_allclose(result.velocities(), np.linspace(-500.0, 500.0, 11))


def test_continuum_polarisation(sphere_points, co_two_level, config, make_model):
    """Dust polarisation is perpendicular to the sky-projected field: B along x gives negative Q."""
    grid = dusty_grid(sphere_points, co_two_level, config, make_model, magfield=(1.0e-9, 0.0, 0.0))
    image = ImageConfig(pxls=3, imgres=20.0, distance=PC, freq=3.0e11, polarization=True)
    result = RayTracer(grid).trace(image)
    stokes_i, stokes_q, stokes_u = result.stokes[1, 1]
    assert stokes_i > 0.0
    assert stokes_q < 0.0
    assert abs(stokes_u) < 1e-6 * abs(stokes_q)
    # Field in the plane of the sky: I drops by MAXP / 3 and |Q| is MAXP of the unpolarised emission.
    assert -stokes_q / stokes_i == pytest.approx(0.15 / (1.0 - 0.15 / 3.0), rel=1e-6)


def test_continuum_without_field_is_unpolarised(sphere_points, co_two_level, config, make_model):
    grid = dusty_grid(sphere_points, co_two_level, config, make_model)
    image = ImageConfig(pxls=3, imgres=20.0, distance=PC, freq=3.0e11, polarization=True)
    result = RayTracer(grid).trace(image)
    assert result.stokes[1, 1, 0] > 0.0
    assert np.all(result.stokes[..., 1:] == 0.0)
    assert result.intensity[1, 1, 0] > 0.0


def test_field_along_line_of_sight(sphere_points, co_two_level, config, make_model):
    grid = dusty_grid(sphere_points, co_two_level, config, make_model, magfield=(0.0, 0.0, 1.0e-9))
    image = ImageConfig(pxls=1, imgres=1.0, distance=PC, freq=3.0e11, polarization=True)
    result = RayTracer(grid).trace(image)
    stokes_i, stokes_q, stokes_u = result.stokes[0, 0]
    assert stokes_q == 0.0 and stokes_u == 0.0
    unpolarised = RayTracer(dusty_grid(sphere_points, co_two_level, config, make_model)).trace(image)
    assert stokes_i == pytest.approx(unpolarised.stokes[0, 0, 0] * (1.0 + 0.15 * 2.0 / 3.0), rel=1e-9)


def test_antialias_and_viewing_angle(static_grid):
    image = ImageConfig(pxls=3, imgres=40.0, distance=PC, trans=0, theta=0.7, phi=0.3, antialias=4)
    result = RayTracer(static_grid).trace(image)
    assert result.intensity.shape == (3, 3, 1)
    assert result.intensity[1, 1, 0] > 0.0


def test_image_missing_the_mesh(static_grid):
    image = ImageConfig(pxls=2, imgres=1000.0, distance=PC, trans=0)
    with pytest.raises(RayTraceDegenerate):
        RayTracer(static_grid).trace(image)


def test_tracer_needs_cells(co_two_level, config, make_model):
    mesh = Mesh.from_neighbours([[0.0, 0.0, 0.0], [1.0e13, 0.0, 0.0]], [[1], [0]], sink=[1])
    grid = Grid.from_model(mesh, make_model(), [co_two_level], config)
    with pytest.raises(GeometryError):
        RayTracer(grid)


def test_invalid_image_configs():
    with pytest.raises(ValueError):
        ImageConfig(pxls=4, imgres=1.0, distance=PC, trans=0, polarization=True)
    with pytest.raises(ValueError):
        ImageConfig(pxls=4, imgres=1.0, distance=PC)
    with pytest.raises(ValueError):
        ImageConfig(pxls=4, imgres=1.0, distance=PC, trans=0, nchan=5)
    with pytest.raises(ValueError):
        ImageConfig(pxls=0, imgres=1.0, distance=PC, trans=0)


def test_rotation_matrix_is_orthonormal():
    rot = ImageConfig(pxls=1, imgres=1.0, distance=PC, trans=0, theta=0.4, phi=1.1).rotation_matrix
    np.testing.assert_allclose(rot @ rot.T, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(np.linalg.det(rot), 1.0)
    np.testing.assert_allclose(ImageConfig(pxls=1, imgres=1.0, distance=PC, trans=0).rotation_matrix, np.eye(3))


def test_unit_conversions():
    config = ImageConfig(pxls=1, imgres=2.0, distance=PC, trans=0, unit="Jy/pixel")
    intensity = np.full((1, 1, 1), 1.0e-18)
    image = Image(config=config, freq=1.0e11, intensity=intensity, tau=np.full((1, 1, 1), 0.5))

    omega = (2.0 * u.arcsec).to(u.rad).value ** 2
    flux = image.to_unit()
    assert flux.unit == u.Jy
    assert flux.value[0, 0, 0] == pytest.approx(1.0e-18 * omega * 1.0e26)
    assert image.to_unit(ImageUnit.SI).value[0, 0, 0] == 1.0e-18
    assert image.to_unit("tau")[0, 0, 0] == 0.5

    kelvin = image.to_unit(ImageUnit.KELVIN)
    assert kelvin.unit == u.K
    assert kelvin.value[0, 0, 0] > 0.0
    luminosity = image.to_unit(ImageUnit.LSUN_PER_PIXEL)
    expected = (4.0 * np.pi * (PC * u.m) ** 2 * flux * 1.0e11 * u.Hz).to(u.L_sun)
    assert luminosity.value[0, 0, 0] == pytest.approx(expected.value[0, 0, 0])


def test_pipeline_run(sphere_points, co_two_level, make_model):
    image = ImageConfig(pxls=3, imgres=40.0, distance=PC, trans=0, nchan=3, velres=200.0)
    config = RunConfig(n_threads=2, seed=1, n_solve_iters=2, initial_photons_per_neighbour=2, max_photons=40)
    with pytest.warns(ConvergenceFailure):
        result = run(sphere_points, make_model(), [co_two_level], images=[image], config=config)
    assert result.state is ConvergenceState.FAILED
    assert len(result.history) == 2
    assert len(result.images) == 1
    assert result.images[0].intensity[1, 1, 1] > 0.0


def test_blended_line_image(sphere_points, co_two_level, cs_two_level, make_model):
    """A line 500 m/s above CO 1-0 shows up at -500 m/s in the CO image when blending is on."""
    config = RunConfig(n_threads=2, seed=9, lte_only=True, blend=True)
    grid = Grid.from_model(
        Mesh.from_points(sphere_points), make_model(abundance=[1.0e-6, 1.0e-6]), [co_two_level, cs_two_level],
        config,
    )
    blend_info = line_blend(grid.molecules, config.max_blend_delta_v)
    image = ImageConfig(pxls=3, imgres=40.0, distance=PC, nchan=11, velres=100.0, trans=0)

    centre = RayTracer(grid, config, blend_info=blend_info).trace(image).intensity[1, 1]
    assert centre[0] > 0.5 * centre[5]
    assert centre[10] < 0.1 * centre[5]

    single = RayTracer(grid, config).trace(image).intensity[1, 1]
    np.testing.assert_allclose(single, single[::-1], rtol=1e-9, atol=0.0)
    assert centre[0] > 10.0 * single[0]
    assert centre[5] == pytest.approx(single[5], rel=0.05)

    # Blend information is ignored unless the run enables blending.
    unblended = RunConfig(n_threads=2, seed=9, lte_only=True)
    np.testing.assert_array_equal(
        RayTracer(grid, unblended, blend_info=blend_info).trace(image).intensity[1, 1], single
    )


def test_image_defaults_from_run_config(sphere_points, co_two_level, make_model):
    """Images that leave polarization and antialiasing unset take them from the run configuration."""
    config = RunConfig(n_threads=2, seed=9, lte_only=True, polarization=True, antialias=3)
    grid = dusty_grid(sphere_points, co_two_level, config, make_model, magfield=(1.0e-9, 0.0, 0.0))
    tracer = RayTracer(grid, config)

    continuum = tracer.trace(ImageConfig(pxls=3, imgres=20.0, distance=PC, freq=3.0e11))
    assert continuum.config.polarization is True
    assert continuum.config.antialias == 3
    assert continuum.stokes is not None
    assert continuum.stokes[1, 1, 1] < 0.0

    # Polarization only applies to the continuum.
    line = tracer.trace(ImageConfig(pxls=3, imgres=20.0, distance=PC, trans=0))
    assert line.config.polarization is False
    assert line.config.antialias == 3
    assert line.stokes is None

    # Explicit image settings win.
    own = tracer.trace(ImageConfig(pxls=3, imgres=20.0, distance=PC, freq=3.0e11, polarization=False, antialias=1))
    assert own.stokes is None
    assert own.config.antialias == 1
