"""
Tests for the period Bellman update and the backward induction engine.
"""

import numpy as np
import pytest

from network_migration.backward import no_help_equilibrium, policy_dynamics
from network_migration.bellman import (
    get_interp_weights,
    interp_migration,
    interpolate_to_finer_grid,
    logit_choice_probabilities,
    update_value_and_policy,
)
from network_migration.equilibrium import initial_mass_guess
from network_migration.help_probabilities import compute_G


def test_interp_weights_extrapolate():
    grid = np.array([0.0, 1.0, 2.0, 4.0])
    low, high, w = get_interp_weights(1.5, grid)
    assert (low, high) == (1, 2) and w == pytest.approx(0.5)
    # beyond the top: last segment, negative weight on the lower node
    low, high, w = get_interp_weights(6.0, grid)
    assert (low, high) == (2, 3) and w == pytest.approx(-1.0)
    low, high, w = get_interp_weights(-1.0, grid)
    assert (low, high) == (0, 1) and w == pytest.approx(2.0)


def test_interp_migration_uses_baseline_state():
    agrid = np.array([0.0, 1.0, 2.0, 3.0])
    S, Na, N, H = 2, 4, 2, 4
    V = np.zeros((S, Na, N))
    V[0] = agrid[:, None] * np.array([1.0, 10.0])[None, :]    # linear in wealth
    V[1] = 1e6                                                 # never read
    a_prime = np.broadcast_to((agrid - 0.5)[:, None, None, None], (Na, N, N, H)).copy()

    f = interp_migration(agrid, a_prime, V)
    assert f.shape == (S, Na, N, N, H)
    assert np.all(f[:, 0] == -np.inf)                          # 0 - 0.5 < 0
    np.testing.assert_allclose(f[0, 2, 0, 1, 3], 10.0 * 1.5)
    np.testing.assert_allclose(f[1], f[0])


def test_interpolate_to_finer_grid_shape():
    agrid = np.linspace(0.0, 1.0, 5)
    ahgrid = np.linspace(0.0, 1.2, 13)
    R = np.broadcast_to((2.0 * agrid)[None, :, None], (3, 5, 2)).copy()
    R_fine = interpolate_to_finer_grid(agrid, ahgrid, R)
    assert R_fine.shape == (3, 1, 2, 13)
    np.testing.assert_allclose(R_fine[0, 0, 1], 2.0 * ahgrid)


def test_logit_probabilities_are_stable():
    cont = np.array([1e6, 1e6 - 1.0, -np.inf]).reshape(1, 1, 1, 3, 1)
    prob = logit_choice_probabilities(cont, 1.0)
    assert np.all(np.isfinite(prob))
    assert prob.sum() == pytest.approx(1.0)
    assert prob[0, 0, 0, 0, 0] == pytest.approx(1.0 / (1.0 + np.exp(-1.0)))
    assert prob[0, 0, 0, 2, 0] == 0.0


def test_update_rows_sum_to_one(small_model):
    m = small_model
    dims = m['dims']
    G = compute_G(np.array([0.6, 0.2, 0.1, 0.1]), m['params']['ggamma'])
    vf, pol = update_value_and_policy(m['vf_nh'], m['params'], m['grids'], m['matrices'], G)

    S, Na, N, H, na = dims['S'], dims['Na'], dims['N'], dims['H'], dims['na']
    assert pol['mu'].shape == (S, Na, N, N)
    assert pol['mun'].shape == (S, Na, N, N, H)
    np.testing.assert_allclose(pol['mu'].sum(axis=3), 1.0)
    np.testing.assert_allclose(pol['mun'].sum(axis=3), 1.0)
    assert pol['a'].min() >= 0 and pol['a'].max() < na
    for key in ('V', 'Vn', 'R', 'Rn'):
        assert vf[key].shape == (S, Na, N)
        assert np.all(np.isfinite(vf[key]))


def test_update_rejects_mismatched_help_distribution(small_model):
    m = small_model
    with pytest.raises(ValueError, match="H = 16"):
        update_value_and_policy(m['vf_nh'], m['params'], m['grids'], m['matrices'], np.ones(8) / 8)


def test_no_help_equilibrium_returns_values(small_model):
    m = small_model
    vf, pol, it = no_help_equilibrium(m['params'], m['grids'], m['matrices'], m['settings'])
    assert 1 <= it <= m['settings']['MaxItV']
    np.testing.assert_allclose(vf['Vn'], m['vf_nh']['Vn'])


def test_policy_dynamics_shapes_and_terminal(small_model):
    m = small_model
    dims, T = m['dims'], m['settings']['T']
    M = initial_mass_guess(dims['N'], T)
    vf_path, pol_path = policy_dynamics(M, m['vf_nh'], m['params'], m['grids'], m['matrices'])

    S, Na, N, H = dims['S'], dims['Na'], dims['N'], dims['H']
    assert vf_path['V'].shape == (T, S, Na, N)
    assert pol_path['mun'].shape == (T - 1, S, Na, N, N, H)
    assert pol_path['a'].shape == (T - 1, S, Na, N)
    np.testing.assert_array_equal(vf_path['V'][T - 1], m['vf_nh']['V'])
    np.testing.assert_array_equal(vf_path['Vn'][T - 1], m['vf_nh']['Vn'])

    # the last computed period is one Bellman step from the terminal values
    G = compute_G(M[:, T - 2], m['params']['ggamma'])
    vf, pol = update_value_and_policy(m['vf_nh'], m['params'], m['grids'], m['matrices'], G)
    np.testing.assert_allclose(vf_path['Vn'][T - 2], vf['Vn'])
    np.testing.assert_array_equal(pol_path['an'][T - 2], pol['an'])


def test_policy_dynamics_is_deterministic(small_model):
    m = small_model
    M = np.full((m['dims']['N'], m['settings']['T']), 0.25)
    vf1, pol1 = policy_dynamics(M, m['vf_nh'], m['params'], m['grids'], m['matrices'])
    vf2, pol2 = policy_dynamics(M, m['vf_nh'], m['params'], m['grids'], m['matrices'])
    for key in vf1:
        np.testing.assert_array_equal(vf1[key], vf2[key])
    for key in pol1:
        np.testing.assert_array_equal(pol1[key], pol2[key])


def test_policy_dynamics_checks_locations(small_model):
    m = small_model
    with pytest.raises(ValueError, match="locations"):
        policy_dynamics(np.ones((3, 4)), m['vf_nh'], m['params'], m['grids'], m['matrices'])
