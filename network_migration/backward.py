"""
Backward induction over the transition horizon, and the stationary no-help
problem that provides its terminal condition.
"""

import numpy as np

from network_migration.bellman import update_value_and_policy
from network_migration.help_probabilities import compute_G


def policy_dynamics(M_path, vf_terminal, params, grids, matrices):
    """
    Backward pass: time-dependent Bellman steps using the continuation V_{t+1}.

    Arguments:
    ----------
    M_path      = guess of networked masses --> np.array, size NxT
    vf_terminal = terminal values, dict with V, Vn [S, Na, N] (R, Rn optional)

    Output:
    ----------
    vf_path  = dict of stacked values, V/Vn/R/Rn each [T, S, Na, N]
    pol_path = dict of stacked policies over t = 0..T-2:
               a, an [T-1, S, Na, N], mu [T-1, S, Na, N, N], mun [T-1, S, Na, N, N, H]
    """
    M_path = np.asarray(M_path, dtype=float)
    N, T = M_path.shape
    V_T = np.asarray(vf_terminal['V'], dtype=float)
    S, Na, N_v = V_T.shape
    H = matrices['a_prime'].shape[3]
    if N_v != N:
        raise ValueError(f"Terminal values have {N_v} locations but the mass path has {N}.")
    if T < 2:
        raise ValueError("The transition horizon must have at least two periods.")

    G_path = compute_G(M_path, params['ggamma'])             # [H, T]

    vf_path = {key: np.empty((T, S, Na, N)) for key in ('V', 'Vn', 'R', 'Rn')}
    pol_path = dict(
        a=np.empty((T - 1, S, Na, N), dtype=np.int64),
        an=np.empty((T - 1, S, Na, N), dtype=np.int64),
        mu=np.empty((T - 1, S, Na, N, N)),
        mun=np.empty((T - 1, S, Na, N, N, H)),
    )

    # terminal anchor; the R slots are NaN when no continuation was supplied
    for key in vf_path:
        vf_path[key][T - 1] = vf_terminal.get(key, np.nan)

    val = dict(V=vf_path['V'][T - 1], Vn=vf_path['Vn'][T - 1])
    for t in range(T - 2, -1, -1):
        vf_t, pol_t = update_value_and_policy(val, params, grids, matrices, G_path[:, t])
        for key in vf_path:
            vf_path[key][t] = vf_t[key]
        for key in pol_path:
            pol_path[key][t] = pol_t[key]
        val = vf_t

    return vf_path, pol_path


def no_help_equilibrium(params, grids, matrices, settings, verbose=False):
    """
    Stationary value functions when networks never offer help (G = G0).
    Value iteration from V = Vn = 1 until the relative L1 change of Vn is
    below tolV or MaxItV iterations are reached.

    Returns (vf, pol, iterations).
    """
    S = params['P'].shape[0]
    Na, N = matrices['a_prime'].shape[:2]
    val = dict(V=np.ones((S, Na, N)), Vn=np.ones((S, Na, N)))

    diff = np.inf
    it = 0
    vf, pol = val, None
    while diff > settings['tolV'] and it < settings['MaxItV']:
        it += 1
        vf, pol = update_value_and_policy(val, params, grids, matrices, params['G0'])
        diff = np.sum(np.abs(vf['Vn'] - val['Vn']) / (1.0 + np.abs(vf['Vn'])))
        if verbose:
            print(f"[No-help VFI {it:03d}] diff={diff:.4e}")
        val = vf

    return vf, pol, it
