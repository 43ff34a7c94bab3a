"""
Tests for the statistical equilibrium solver at a single vertex.
"""

import numpy as np
import pytest

from limoncello.config import RunConfig
from limoncello.constants import HCKB, planck
from limoncello.errors import NumericalInstabilityError
from limoncello.moldata import assign_collision_partners
from limoncello.stateq import (
    AcceleratedRadiationField, FixedRadiationField, VertexConditions, collision_interpolation,
    line_coefficient_factors, lte_populations, rate_matrix, solve_rate_equations, solve_vertex, source_fn_array,
)


def conditions_for(mol, temperature, density):
    partner_dens = np.full(mol.npart, density)
    t_binlow = np.zeros(mol.npart, dtype=np.int64)
    interp_coeff = np.zeros(mol.npart)
    for p, partner in enumerate(mol.partners):
        t_binlow[p], interp_coeff[p] = collision_interpolation(partner.temperatures, temperature)
    return VertexConditions(temperature, partner_dens, t_binlow, interp_coeff)


def test_lte_populations(co_three_level):
    pops = lte_populations(co_three_level, 20.0)
    assert pops.sum() == pytest.approx(1.0)
    assert pops[1] / pops[0] == pytest.approx(3.0 * np.exp(-HCKB * 3.845033 / 20.0))
    np.testing.assert_array_equal(lte_populations(co_three_level, 0.0), [1.0, 0.0, 0.0])


def test_collision_interpolation_clamps():
    temps = np.array([10.0, 20.0, 50.0, 100.0])
    assert collision_interpolation(temps, 5.0) == (0, 0.0)
    assert collision_interpolation(temps, 500.0) == (2, 1.0)
    assert collision_interpolation(temps, 35.0) == (1, pytest.approx(0.5))
    assert collision_interpolation(temps, 20.0) == (1, pytest.approx(0.0))
    assert collision_interpolation(np.array([30.0]), 80.0) == (0, 0.0)


def test_collisional_detailed_balance(co_three_level):
    """Without radiation the collisional rates alone satisfy detailed balance at the kinetic temperature."""
    (mol,) = assign_collision_partners([co_three_level], 1)
    rates = rate_matrix(mol, conditions_for(mol, 35.0, 1.0e10), jbar=np.zeros(mol.nline))
    assert np.all(np.diag(rates) == 0.0)
    np.add.at(rates, (mol.upper, mol.lower), -mol.a_einstein)
    flux = lte_populations(mol, 35.0)[:, None] * rates
    np.testing.assert_allclose(flux, flux.T, rtol=1e-10)


def test_two_level_radiative_equilibrium(co_two_level_radiative):
    """Purely radiative two-level atom: n_u / n_l = B_lu J / (A + B_ul J)."""
    mol = co_two_level_radiative
    jbar = 1.0e-17
    update = solve_vertex(
        mol, conditions_for(mol, 20.0, 0.0), FixedRadiationField([jbar]), lte_populations(mol, 20.0),
        RunConfig(n_threads=1),
    )
    assert update.converged and not update.fallback
    assert update.n_iter == 5
    expected = mol.beinstl[0] * jbar / (mol.a_einstein[0] + mol.beinstu[0] * jbar)
    assert update.pops[1] / update.pops[0] == pytest.approx(expected, rel=1e-10)


def test_planck_field_gives_lte(co_three_level):
    """A Planck radiation field at the kinetic temperature keeps the populations at LTE for any density."""
    (mol,) = assign_collision_partners([co_three_level], 1)
    temperature = 30.0
    field = FixedRadiationField(planck(mol.freq, temperature))
    for density in (1.0e6, 1.0e10, 1.0e14):
        update = solve_vertex(
            mol, conditions_for(mol, temperature, density), field, np.full(mol.nlev, 1.0 / mol.nlev),
            RunConfig(n_threads=1),
        )
        np.testing.assert_allclose(update.pops, lte_populations(mol, temperature), rtol=1e-5)


def test_high_density_limit_is_lte(co_three_level):
    (mol,) = assign_collision_partners([co_three_level], 1)
    update = solve_vertex(
        mol, conditions_for(mol, 40.0, 1.0e20), FixedRadiationField(np.zeros(mol.nline)),
        lte_populations(mol, 10.0), RunConfig(n_threads=1),
    )
    np.testing.assert_allclose(update.pops, lte_populations(mol, 40.0), rtol=1e-5)


def test_disconnected_level_gets_zero_population():
    """A level with no transitions in or out is left empty."""
    rates = np.array([[0.0, 1.0, 0.0], [2.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
    pops = solve_rate_equations(rates, np.array([0.5, 0.3, 0.2]), 1.0e12, 1.0e-6)
    np.testing.assert_allclose(pops, [2.0 / 3.0, 1.0 / 3.0, 0.0])


def test_ill_conditioned_system_raises():
    rates = np.array([[0.0, 1.0], [1.0, 0.0]])
    with pytest.raises(NumericalInstabilityError) as excinfo:
        solve_rate_equations(rates, np.array([0.5, 0.5]), max_condition=1.0, minpop=1.0e-6, vertex=3)
    assert excinfo.value.condition > 1.0
    assert "[V3]" in str(excinfo.value)


def test_instability_falls_back_to_lte(co_two_level):
    (mol,) = assign_collision_partners([co_two_level], 1)
    update = solve_vertex(
        mol, conditions_for(mol, 25.0, 1.0e10), FixedRadiationField(np.zeros(1)), np.array([0.5, 0.5]),
        RunConfig(n_threads=1, max_condition=1.0),
    )
    assert update.fallback and not update.converged
    np.testing.assert_allclose(update.pops, lte_populations(mol, 25.0))


def test_line_coefficient_factors(co_two_level):
    mol = co_two_level
    pops = lte_populations(mol, 20.0)
    jcoef, acoef = line_coefficient_factors(mol, pops, 1.0 / 300.0, 1.0e6)
    # The line source function of LTE populations is the Planck function.
    assert jcoef[0] / acoef[0] == pytest.approx(planck(mol.freq, 20.0)[0], rel=1e-5)


def accelerated_field(mol, phot, vfac, half_ds, local_jcoef=None, background=None):
    n_rays = len(half_ds)
    return AcceleratedRadiationField(
        mol=mol, species=0, phot=phot, vfac_loc=vfac, half_ds=np.asarray(half_ds), dv_rel=np.zeros(n_rays),
        local_jcoef=np.zeros(mol.nline) if local_jcoef is None else local_jcoef, local_acoef=np.zeros(mol.nline),
        knu=np.zeros(mol.nline), dust=np.zeros(mol.nline), binv=np.array([1.0 / 300.0]), nmol=1.0e6,
        line_offsets=np.array([0, mol.nline]), blends=None,
        background=np.full(mol.nline, 7.0) if background is None else background, taylor_cutoff=0.03,
    )


def test_accelerated_field_without_local_path(co_two_level):
    """With zero-length local half-edges the mean intensity is the profile-weighted mean of the rays."""
    phot = np.array([[1.0], [3.0]])
    vfac = np.array([[1.0], [0.5]])
    field = accelerated_field(co_two_level, phot, vfac, [0.0, 0.0])
    jbar = field.mean_intensity(lte_populations(co_two_level, 20.0))
    assert jbar[0] == pytest.approx((1.0 + 1.5) / 1.5)


def test_accelerated_field_no_weight_gives_background(co_two_level):
    field = accelerated_field(co_two_level, np.ones((2, 1)), np.zeros((2, 1)), [1.0, 1.0])
    np.testing.assert_allclose(field.mean_intensity(lte_populations(co_two_level, 20.0)), [7.0])


def test_accelerated_field_local_emission(co_two_level):
    """An optically thick local half-edge replaces the incoming intensity by the local source function."""
    mol = co_two_level
    pops = lte_populations(mol, 20.0)
    field = accelerated_field(mol, np.zeros((1, 1)), np.ones((1, 1)), [1.0e16])
    assert field.mean_intensity(pops)[0] == pytest.approx(planck(mol.freq, 20.0)[0], rel=1e-5)


def test_accelerated_field_blends(co_three_level, cs_two_level):
    """
    Line 0 of CO is blended with CO line 1 and with the line of a second species (global line 2).

    The CO blend follows the populations being solved for; the other species stays at its sweep snapshot.
    """
    mol = co_three_level
    binv = np.array([1.0 / 300.0, 1.0 / 300.0])
    half_ds = 1.0e12
    pops = lte_populations(mol, 20.0)
    other_jcoef, other_acoef = line_coefficient_factors(cs_two_level, lte_populations(cs_two_level, 20.0),
                                                        binv[1], 1.0e5)
    snapshot_j = np.array([0.0, 0.0, other_jcoef[0]])
    snapshot_a = np.array([0.0, 0.0, other_acoef[0]])
    blends = (np.array([0, 2, 2, 2]), np.array([1, 2]), np.zeros(2))

    def field(local_jcoef, with_blends=True):
        return AcceleratedRadiationField(
            mol=mol, species=0, phot=np.zeros((1, 3)), vfac_loc=np.ones((1, 3)), half_ds=np.array([half_ds]),
            dv_rel=np.zeros(1), local_jcoef=local_jcoef, local_acoef=snapshot_a, knu=np.zeros(2),
            dust=np.zeros(2), binv=binv, nmol=1.0e6, line_offsets=np.array([0, 2, 3]),
            blends=blends if with_blends else None, background=np.zeros(2), taylor_cutoff=0.03,
        )

    jbar = field(snapshot_j).mean_intensity(pops)
    jcoef, acoef = line_coefficient_factors(mol, pops, binv[0], 1.0e6)
    jnu = jcoef[0] + jcoef[1] + snapshot_j[2]
    alpha = acoef[0] + acoef[1] + snapshot_a[2]
    remnant, _ = source_fn_array(np.array([alpha * half_ds]), 0.03)
    assert jbar[0] == pytest.approx(remnant[0] * jnu * half_ds, rel=1e-10)
    # Line 1 has no blends of its own.
    assert jbar[1] == pytest.approx(field(snapshot_j, with_blends=False).mean_intensity(pops)[1], rel=1e-12)

    # The snapshot of the own species' line is not used; the other species' snapshot is.
    stale_own = snapshot_j.copy()
    stale_own[1] = 1.0e3 * jcoef[1]
    assert field(stale_own).mean_intensity(pops)[0] == pytest.approx(jbar[0], rel=1e-12)
    stale_other = snapshot_j.copy()
    stale_other[2] *= 2.0
    assert field(stale_other).mean_intensity(pops)[0] > jbar[0]

    # A blend shifted by many Doppler widths drops out of the profile.
    far = AcceleratedRadiationField(
        mol=mol, species=0, phot=np.zeros((1, 3)), vfac_loc=np.ones((1, 3)), half_ds=np.array([half_ds]),
        dv_rel=np.zeros(1), local_jcoef=snapshot_j, local_acoef=snapshot_a, knu=np.zeros(2), dust=np.zeros(2),
        binv=binv, nmol=1.0e6, line_offsets=np.array([0, 2, 3]),
        blends=(blends[0], blends[1], np.full(2, 1.0e4)), background=np.zeros(2), taylor_cutoff=0.03,
    )
    assert far.mean_intensity(pops)[0] == pytest.approx(
        field(snapshot_j, with_blends=False).mean_intensity(pops)[0], rel=1e-10
    )
