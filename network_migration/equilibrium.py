"""
Dynamic equilibrium: fixed point in the path of networked masses M [N, T].

Each outer iteration
    1) solves the policies backwards given the help path implied by M,
    2) simulates the panel forward under the requested policy experiment,
    3) compares the simulated networked masses with M using a time-weighted
       relative L1 distance that favors early periods,
    4) replaces M with the simulated path.
"""

import time

import numpy as np

from network_migration.backward import policy_dynamics
from network_migration.help_probabilities import compute_G, transport_aid_help_path
from network_migration.simulation import (
    draw_shocks,
    simulate_agents,
    simulate_agents_shelter_aid,
    simulate_agents_transport_aid,
)

SCENARIOS = ('benchmark', 'transport', 'shelter')
TIME_DECAY = 0.7        # weight of period t is proportional to TIME_DECAY ** t


def initial_mass_guess(N, T):
    """All networked mass at the home location in every period."""
    M0 = np.zeros((N, T))
    M0[0, :] = 1.0
    return M0


def time_weights(T, decay=TIME_DECAY):
    w = decay ** np.arange(T)
    return w / w.sum()


def mass_path_distance(M_old, M_new, weights):
    """sum_t w_t sum_n |M_old - M_new| / (1 + |M_new|)"""
    diff_per_t = np.sum(np.abs(M_old - M_new) / (1.0 + np.abs(M_new)), axis=0)
    return float(np.sum(weights * diff_per_t))


def run_scenario_simulation(scenario, M_path, m0, pol, params, grids, shocks):
    """
    Forward pass for the given experiment. Returns a dict with M_history,
    MIN_history, agent_data, G_path (and G_aug, stats for aid programs).
    """
    kind = scenario.get('type', 'benchmark')
    G_path = compute_G(M_path, params['ggamma'])
    out = dict(G_path=G_path)

    if kind == 'transport':
        G_aug = transport_aid_help_path(M_path, params['ggamma'], scenario)
        M_hist, MIN_hist, agent_data, stats = simulate_agents_transport_aid(
            m0, pol, G_path, G_aug, params, grids, scenario, shocks=shocks)
        out.update(G_aug=G_aug, stats=stats)
    elif kind == 'shelter':
        M_hist, MIN_hist, agent_data, stats = simulate_agents_shelter_aid(
            m0, pol, G_path, params, grids, scenario, shocks=shocks)
        out.update(stats=stats)
    else:
        M_hist, MIN_hist, agent_data = simulate_agents(m0, pol, G_path, params, grids, shocks=shocks)

    out.update(M_history=M_hist, MIN_history=MIN_hist, agent_data=agent_data)
    return out


def solve_dynamic_equilibrium(M0, vf_terminal, m0, params, grids, matrices, settings,
                              scenario=None, verbose=True):
    """
    Fixed point in the networked-mass path.

    Arguments:
    ----------
    M0          = initial guess --> np.array, size NxT
    vf_terminal = terminal value functions (dict with V, Vn)
    m0          = initial agent panel
    settings    = dict with tolM, MaxItJ, seed
    scenario    = dict with 'type' in {'benchmark', 'transport', 'shelter'}
                  and the program fields of the aid experiments

    Output:
    ----------
    dict with policies, M, iterations, converged, diff, diff_history,
    vf_path and simulation (last forward pass). Hitting MaxItJ is not an
    error: converged is False and the last iterate is returned.
    """
    scenario = dict(scenario or {})
    scenario.setdefault('type', 'benchmark')
    scenario['type'] = str(scenario['type']).lower()
    if scenario['type'] not in SCENARIOS:
        raise ValueError(f"Unknown scenario type '{scenario['type']}'; expected one of {SCENARIOS}.")

    M_eqm = np.array(M0, dtype=float)
    N, T = M_eqm.shape
    n_agents = len(m0['location'])
    shocks = draw_shocks(n_agents, T, N, settings.get('seed', 12345))
    weights = time_weights(T)

    diff = np.inf
    diff_history = []
    it = 0
    vf_path, pol_path, sim = None, None, None
    t_start = time.time()

    while diff > settings['tolM'] and it < settings['MaxItJ']:
        it += 1
        vf_path, pol_path = policy_dynamics(M_eqm, vf_terminal, params, grids, matrices)
        sim = run_scenario_simulation(scenario, M_eqm, m0, pol_path, params, grids, shocks)

        M_new = sim['MIN_history']
        diff = mass_path_distance(M_eqm, M_new, weights)
        diff_history.append(diff)
        M_eqm = M_new

        if verbose:
            print(f"[{scenario['type']} eqm {it:03d}] weighted |M - M_new| = {diff:.4e}  "
                  f"({time.time() - t_start:.1f}s)")

    converged = bool(diff <= settings['tolM'])
    if verbose:
        status = "Converged" if converged else "Iteration cap reached"
        print(f"{status} after {it} iterations (diff = {diff:.4e}).")

    return dict(
        policies=pol_path,
        M=M_eqm,
        iterations=it,
        converged=converged,
        diff=diff,
        diff_history=diff_history,
        vf_path=vf_path,
        simulation=sim,
    )
