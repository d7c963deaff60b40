"""
Tests for model setup: parameters, transition matrices, grids, payoff tensors.
"""

import numpy as np
import pytest

from network_migration.setup_model import (
    build_joint_transition,
    build_markov_matrix_difficult_at_top,
    base_migration_costs,
    create_initial_distribution,
    iteration_settings,
    set_dimensions,
    set_parameters,
    setup_model,
)


def test_dimensions():
    dims = set_dimensions(N=3, B=4, Na=10, na=50)
    assert dims['S'] == 8
    assert dims['H'] == 8
    with pytest.raises(ValueError):
        set_dimensions(N=0)
    with pytest.raises(ValueError):
        set_dimensions(Na=1)


def test_iteration_settings_overrides():
    settings = iteration_settings(T=10, MaxItJ=4)
    assert settings['T'] == 10 and settings['MaxItJ'] == 4
    assert settings['tolM'] == 1e-2
    with pytest.raises(ValueError, match="Unknown"):
        iteration_settings(tol=1)
    with pytest.raises(ValueError):
        iteration_settings(T=1)


def test_markov_matrix_difficult_at_top():
    P = build_markov_matrix_difficult_at_top(5, 0.08, 0.01, 1.0)
    np.testing.assert_allclose(P.sum(axis=1), 1.0)
    assert P[4, 4] == pytest.approx(0.99)
    assert P[0, 1] == pytest.approx(0.08)
    # climbing gets harder closer to the top
    assert P[1, 2] > P[2, 3] > P[3, 4]
    with pytest.raises(ValueError):
        build_markov_matrix_difficult_at_top(3, 0.8, 0.5)


def test_joint_transition_is_column_stochastic():
    B, N = 3, 2
    Pb = np.repeat(build_markov_matrix_difficult_at_top(B, 0.1)[:, :, None], N, axis=2)
    f = np.full((B, N), 0.7)
    g = np.full((B, N), 0.1)
    P = build_joint_transition(Pb, f, g)
    assert P.shape == (2 * B, 2 * B, N)
    np.testing.assert_allclose(P.sum(axis=0), 1.0)
    # unemployed at psi 0 -> employed at psi 0 with prob f * Pb[0, 0]
    assert P[B, 0, 0] == pytest.approx(0.7 * Pb[0, 0, 0])
    with pytest.raises(ValueError):
        build_joint_transition(Pb, f[:, :1], g)


def test_base_migration_costs():
    tau = base_migration_costs(np.array([2.0, 3.5, 12.0]), np.array([3.0, 0.5, 3.5, 6.0]))
    assert np.all(np.diag(tau) == 0)
    assert tau[0, 1] == pytest.approx(2.5)
    assert tau[1, 0] == pytest.approx(5.0)
    assert tau[0, 3] == pytest.approx(6.0 + 2.0 + 3.5 + 12.0)


def test_parameters_validate_location_vectors():
    dims = set_dimensions(N=3, B=2, Na=5, na=20)
    with pytest.raises(ValueError, match="one entry per location"):
        set_parameters(dims)
    with pytest.raises(ValueError, match="Unknown parameter"):
        set_parameters(set_dimensions(), rho=0.3)


def test_parameters_derived_tensors():
    dims, params, grids, matrices = setup_model(N=4, B=2, Na=6, na=40)
    N, H = dims['N'], dims['H']
    assert params['ttau'].shape == (N, N, H)
    np.testing.assert_allclose(params['bbi'], 0.5 * params['A'])
    np.testing.assert_allclose(params['G0'], np.eye(H)[0])
    np.testing.assert_allclose(params['P'].sum(axis=0), 1.0)
    # no help: base costs; help everywhere: discounted costs
    np.testing.assert_allclose(params['ttau'][:, :, 0], params['tau_base'])
    np.testing.assert_allclose(params['ttau'][:, :, H - 1], params['aalpha'] * params['tau_base'])


def test_payoff_tensors():
    dims, params, grids, matrices = setup_model(N=4, B=2, Na=6, na=40)
    S, Na, N, na, H = dims['S'], dims['Na'], dims['N'], dims['na'], dims['H']
    Ue, a_prime = matrices['Ue'], matrices['a_prime']
    assert Ue.shape == (S, Na, N, na)
    assert a_prime.shape == (Na, N, N, H)

    # saving the top of the grid out of zero wealth is infeasible
    assert np.all(Ue[:, 0, :, -1] == -np.finfo(float).max)
    # saving nothing is always feasible
    assert np.all(np.isfinite(Ue[:, :, :, 0])) and np.all(Ue[:, :, :, 0] > -1e300)
    np.testing.assert_allclose(a_prime[:, 0, 0, 0], grids['agrid'])
    assert grids['agrid'][0] == 0.0 and grids['agrid'][-1] == pytest.approx(40.0)


def test_initial_distribution():
    dims = set_dimensions(N=4, B=2, Na=6, na=40)
    m0 = create_initial_distribution(dims, 100, seed=1)
    assert np.all(m0['location'] == 0)
    assert np.all(m0['network'] == 1)
    assert m0['wealth'].min() >= 0 and m0['wealth'].max() < dims['Na']
    assert m0['state'].min() >= 0 and m0['state'].max() < dims['S']
