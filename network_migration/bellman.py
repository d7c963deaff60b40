"""
Period Bellman update for the migration problem.

Given next-period value functions (V for agents outside the network, Vn for
networked agents) and the distribution G over help vectors, compute this
period's values, savings rules on the fine grid and destination-choice
probabilities from the extreme-value (logit) discrete choice.

Array layout:
    V, Vn, R, Rn     [S, Na, N]
    a, an            [S, Na, N]          indices into the fine grid
    mu               [S, Na, N, N]       origin x destination
    mun              [S, Na, N, N, H]    origin x destination x help vector
"""

import numpy as np
from numba import njit, prange
from scipy.interpolate import interp1d


# =============================================================================
# Interpolation
# =============================================================================

@njit(cache=True)
def get_interp_weights(x, x_grid):
    """Bracketing indices and weight on the lower node; extrapolates linearly."""
    n = len(x_grid)
    if x <= x_grid[1]:
        low = 0
    elif x >= x_grid[n - 2]:
        low = n - 2
    else:
        low, high = 1, n - 2
        while high - low > 1:
            mid = (low + high) // 2
            if x_grid[mid] > x:
                high = mid
            else:
                low = mid
    high = low + 1
    w_low = (x_grid[high] - x) / (x_grid[high] - x_grid[low])
    return low, high, w_low


@njit(cache=True, parallel=True)
def interp_migration_kernel(agrid, a_prime, v_base):
    """
    out[a, i, j, h] = v_base(., j) evaluated at a_prime[a, i, j, h].
    v_base is [Na, N]: the value at the destination j.
    """
    Na, N, _, H = a_prime.shape
    out = np.empty((Na, N, N, H))
    for i in prange(N):
        for j in range(N):
            for h in range(H):
                for ia in range(Na):
                    low, high, w_low = get_interp_weights(a_prime[ia, i, j, h], agrid)
                    out[ia, i, j, h] = w_low * v_base[low, j] + (1.0 - w_low) * v_base[high, j]
    return out


def interp_migration(agrid, a_prime, V):
    """
    Continuation value of arriving at destination j from origin i under
    help vector h, [S, Na, N, N, H].

    After a move the idiosyncratic state resets to the baseline, so the
    value is read off the baseline slice V[0] and is the same for every S.
    Negative post-migration wealth is infeasible (-inf).
    """
    S, Na, N = V.shape
    if a_prime.shape[:3] != (Na, N, N):
        raise ValueError(f"a_prime must be [{Na}, {N}, {N}, H], got {a_prime.shape}.")
    f = interp_migration_kernel(agrid, a_prime, np.ascontiguousarray(V[0]))
    f = np.repeat(f[None], S, axis=0)
    f[:, a_prime < 0] = -np.inf
    return f


def interpolate_to_finer_grid(agrid, ahgrid, R):
    """Map R [S, Na, N] from the coarse to the fine grid, returned as [S, 1, N, na]."""
    f = interp1d(agrid, R, kind='linear', axis=1, fill_value='extrapolate', assume_sorted=True)
    R_fine = f(ahgrid)                                  # [S, na, N]
    return np.transpose(R_fine, (0, 2, 1))[:, None, :, :]


# =============================================================================
# Discrete choice
# =============================================================================

def logit_choice_probabilities(cont, scale):
    """
    Destination probabilities along axis 3, p_j ∝ exp(cont_j / scale).
    Shifted by the row maximum before exponentiating; 0/0 rows give zeros.
    """
    with np.errstate(invalid='ignore', divide='ignore', over='ignore'):
        z = cont / scale
        z = z - np.max(z, axis=3, keepdims=True)
        expz = np.exp(z)
        expz[np.isnan(expz)] = 0.0
        prob = expz / np.sum(expz, axis=3, keepdims=True)
    prob[np.isnan(prob)] = 0.0
    return prob


def expected_choice_value(prob, cont):
    """prob * cont with 0 * (-inf) counted as zero."""
    with np.errstate(invalid='ignore'):
        value = prob * cont
    value[np.isnan(value)] = 0.0
    return value


def stay_continuation(P, V):
    """E[V(s', a, n) | s] under the location-specific transition P[s', s, n]."""
    return np.einsum('ksn,kan->san', P, V)


# =============================================================================
# Period update
# =============================================================================

def update_value_and_policy(val, params, grids, matrices, G):
    """
    One backward step of the Bellman operator.

    Arguments:
    ----------
    val      = next-period values --> dict with V, Vn [S, Na, N]
    params   = parameters (P, cchi, bbeta, CONS, nnu)
    grids    = agrid [Na], ahgrid [na]
    matrices = Ue [S, Na, N, na], a_prime [Na, N, N, H]
    G        = probability of each help vector this period --> [H]

    Output:
    ----------
    vf  = dict with V, Vn, R, Rn [S, Na, N]
    pol = dict with a, an, mu, mun
    """
    V, Vn = val['V'], val['Vn']
    a_prime, Ue = matrices['a_prime'], matrices['Ue']
    S, Na, N = V.shape
    H = a_prime.shape[3]
    G = np.asarray(G, dtype=float)
    if Vn.shape != V.shape:
        raise ValueError(f"V and Vn must share a shape, got {V.shape} and {Vn.shape}.")
    if G.shape != (H,):
        raise ValueError(f"Help distribution must have H = {H} entries, got shape {G.shape}.")
    if Ue.shape[:3] != (S, Na, N):
        raise ValueError(f"Ue must be [{S}, {Na}, {N}, na], got {Ue.shape}.")

    cchi = params['cchi']
    V_blend = (1.0 - cchi) * Vn + cchi * V

    # 1. Staying put
    cont_no_mig = stay_continuation(params['P'], V)
    cont_no_mig_net = stay_continuation(params['P'], V_blend)

    # 2. Moving: origin x destination x help
    cont_mig = interp_migration(grids['agrid'], a_prime, V)
    cont_mig_net = interp_migration(grids['agrid'], a_prime, V_blend)
    for i in range(N):
        cont_mig[:, :, i, i, :] = cont_no_mig[:, :, i, None]
        cont_mig_net[:, :, i, i, :] = cont_no_mig_net[:, :, i, None]
    infeasible = a_prime < 0
    cont_mig[:, infeasible] = -np.inf
    cont_mig_net[:, infeasible] = -np.inf

    # 3. Destination choice
    scale = params['CONS'] * params['nnu']
    mmuu = logit_choice_probabilities(cont_mig[..., :1], scale)
    mmuu_net = logit_choice_probabilities(cont_mig_net, scale)

    # 4. Expected value of the migration decision
    exp_value = expected_choice_value(mmuu, cont_mig[..., :1])[..., 0]
    exp_value_net = expected_choice_value(mmuu_net, cont_mig_net)
    exp_value_net = np.sum(exp_value_net * G[None, None, None, None, :], axis=4)

    R = params['bbeta'] * np.sum(exp_value, axis=3)
    Rn = params['bbeta'] * np.sum(exp_value_net, axis=3)

    # 5. Savings on the fine grid
    total_val = Ue + interpolate_to_finer_grid(grids['agrid'], grids['ahgrid'], R)
    a_idx = np.argmax(total_val, axis=3)
    V_new = np.take_along_axis(total_val, a_idx[..., None], axis=3)[..., 0]

    total_valn = Ue + interpolate_to_finer_grid(grids['agrid'], grids['ahgrid'], Rn)
    an_idx = np.argmax(total_valn, axis=3)
    Vn_new = np.take_along_axis(total_valn, an_idx[..., None], axis=3)[..., 0]

    vf = dict(V=V_new, Vn=Vn_new, R=R, Rn=Rn)
    pol = dict(a=a_idx.astype(np.int64), an=an_idx.astype(np.int64),
               mu=mmuu[..., 0], mun=mmuu_net)
    return vf, pol
