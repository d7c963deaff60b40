"""
Forward Monte Carlo simulation of the agent panel.

Three engines share the same per-agent transition:
    1) savings: fine-grid policy -> nearest coarse wealth point
    2) help draw (networked agents) from G[:, t]
    3) destination draw from mu / mun
    4) move: pay ttau(origin, destination, help), reset state to 0;
       stay: draw the next state from P[:, s, location]
    5) networked agents away from home lose the network with prob. cchi;
       the network is never regained.

All uniform draws are generated up front from one numpy Generator
(common random numbers), so engines fed the same seed see the same shocks.
The benchmark engine runs agents in parallel (prange); the aid engines run
agents sequentially in index order within each period, since the program
budget is a single ledger drawn down in queue order.
"""

import numpy as np
from numba import njit, prange

from network_migration.help_probabilities import help_matrix, marginal_help_probabilities

BUDGET_TOL = 1e-12
POLICY_FIELDS = ('a', 'an', 'mu', 'mun')
BASE_NDIM = dict(a=3, an=3, mu=4, mun=5)


# =============================================================================
# Inputs
# =============================================================================

def as_policy_sequence(pol, T):
    """
    Stacked policy path of length T-1. A single-period (time-invariant)
    policy is repeated across periods; a stacked one is checked and returned.
    """
    out = {}
    for key in POLICY_FIELDS:
        if key not in pol:
            raise ValueError(f"Policy is missing the '{key}' field.")
        arr = np.asarray(pol[key])
        if arr.ndim == BASE_NDIM[key]:
            arr = np.repeat(arr[None], T - 1, axis=0)
        elif arr.ndim != BASE_NDIM[key] + 1 or arr.shape[0] != T - 1:
            raise ValueError(f"Policy '{key}' must be a single period or a sequence of T-1 = {T - 1} "
                             f"periods, got shape {arr.shape}.")
        out[key] = arr
    out['a'] = out['a'].astype(np.int64)
    out['an'] = out['an'].astype(np.int64)
    out['mu'] = out['mu'].astype(np.float64)
    out['mun'] = out['mun'].astype(np.float64)
    return out


def draw_shocks(n_agents, T, N, seed=12345):
    """Uniform draws for every (period, agent) used by the simulation engines."""
    rng = np.random.default_rng(seed)
    shape = (T - 1, n_agents)
    return dict(
        help=rng.random(shape),
        move=rng.random(shape),
        state=rng.random(shape),
        attrition=rng.random(shape),
        artificial=rng.random((T - 1, n_agents, N)),
        grant=rng.random(shape),
    )


def _check_inputs(m0, pol, G_path, params, grids, shocks, seed):
    H, T = G_path.shape
    N = params['ttau'].shape[0]
    if H != params['ttau'].shape[2]:
        raise ValueError(f"Help path has {H} configurations but ttau has {params['ttau'].shape[2]}.")
    if pol['mun'].shape[-1] != H or pol['mun'].shape[-2] != N:
        raise ValueError(f"mun must end in [{N}, {H}], got shape {pol['mun'].shape}.")

    init = {}
    for key in ('location', 'wealth', 'state', 'network'):
        if key not in m0:
            raise ValueError(f"Initial distribution is missing the '{key}' field.")
        init[key] = np.asarray(m0[key], dtype=np.int64)
    n_agents = init['location'].shape[0]
    if any(arr.shape != (n_agents,) for arr in init.values()):
        raise ValueError("Initial distribution fields must all have one entry per agent.")
    if np.any(init['location'] < 0) or np.any(init['location'] >= N):
        raise ValueError("Initial locations must lie in 0..N-1.")
    if np.any(init['wealth'] < 0) or np.any(init['wealth'] >= len(grids['agrid'])):
        raise ValueError("Initial wealth indices must lie on the coarse grid.")

    if shocks is None:
        shocks = draw_shocks(n_agents, T, N, seed)
    elif shocks['move'].shape != (T - 1, n_agents):
        raise ValueError(f"Shocks must be drawn for ({T - 1}, {n_agents}) agent-periods, "
                         f"got {shocks['move'].shape}.")
    return init, shocks, T


# =============================================================================
# Per-agent building blocks (Numba)
# =============================================================================

@njit(cache=True)
def draw_index(prob, u):
    """
    Inverse-CDF draw from an unnormalized pmf. Falls back to the arg-max (not
    the last entry) when rounding leaves the cumulative sum short of u;
    returns -1 if the pmf does not sum to a positive number.
    """
    total = 0.0
    for k in range(prob.shape[0]):
        total += prob[k]
    if not total > 0.0:
        return -1
    cum = 0.0
    for k in range(prob.shape[0]):
        cum += prob[k] / total
        if cum >= u:
            return k
    return np.argmax(prob)


@njit(cache=True)
def nearest_index(x, grid):
    best = 0
    best_dist = abs(grid[0] - x)
    for k in range(1, grid.shape[0]):
        d = abs(grid[k] - x)
        if d < best_dist:
            best = k
            best_dist = d
    return best


@njit(cache=True)
def realized_wealth(a_fine, agrid, ahgrid):
    """Clamp the fine-grid savings index and map it to the nearest coarse point."""
    if a_fine < 0:
        a_fine = 0
    elif a_fine > ahgrid.shape[0] - 1:
        a_fine = ahgrid.shape[0] - 1
    return nearest_index(ahgrid[a_fine], agrid)


@njit(cache=True)
def move_or_stay(loc, dest, h, wea, sta, ttau, P, agrid, u_state):
    """Wealth and state after the location choice; returns (wealth, state)."""
    if dest != loc:
        wea = nearest_index(agrid[wea] - ttau[loc, dest, h], agrid)
        sta = 0
    else:
        sta = draw_index(P[:, sta, loc], u_state)
    return wea, sta


@njit(cache=True)
def network_after_move(net, dest, cchi, u):
    if net == 1 and dest != 0 and u < cchi:
        return 0
    return net


# =============================================================================
# Engines (Numba)
# =============================================================================

@njit(cache=True, parallel=True)
def simulate_benchmark_kernel(loc0, wea0, sta0, net0, a_pol, an_pol, mu, mun, G_path,
                              ttau, P, cchi, agrid, ahgrid,
                              u_help, u_move, u_state, u_attr):
    n = loc0.shape[0]
    T = G_path.shape[1]
    loc_traj = np.zeros((n, T), dtype=np.int64)
    wea_traj = np.zeros((n, T), dtype=np.int64)
    sta_traj = np.zeros((n, T), dtype=np.int64)
    net_traj = np.zeros((n, T), dtype=np.int64)
    help_traj = np.zeros((n, T), dtype=np.int64)
    bad = np.zeros(n, dtype=np.bool_)

    for i in prange(n):
        loc, wea, sta, net = loc0[i], wea0[i], sta0[i], net0[i]
        loc_traj[i, 0] = loc
        wea_traj[i, 0] = wea
        sta_traj[i, 0] = sta
        net_traj[i, 0] = net

        for t in range(T - 1):
            if net == 1:
                next_wea = realized_wealth(an_pol[t, sta, wea, loc], agrid, ahgrid)
                h = draw_index(G_path[:, t], u_help[t, i])
                dest = draw_index(mun[t, sta, wea, loc, :, h], u_move[t, i])
            else:
                next_wea = realized_wealth(a_pol[t, sta, wea, loc], agrid, ahgrid)
                h = 0
                dest = draw_index(mu[t, sta, wea, loc, :], u_move[t, i])
            if h < 0 or dest < 0:
                bad[i] = True
                break

            next_wea, sta = move_or_stay(loc, dest, h, next_wea, sta, ttau, P, agrid, u_state[t, i])
            net = network_after_move(net, dest, cchi, u_attr[t, i])
            loc = dest
            wea = next_wea

            loc_traj[i, t + 1] = loc
            wea_traj[i, t + 1] = wea
            sta_traj[i, t + 1] = sta
            net_traj[i, t + 1] = net
            help_traj[i, t + 1] = h

    return loc_traj, wea_traj, sta_traj, net_traj, help_traj, bad


@njit(cache=True)
def simulate_transport_kernel(loc0, wea0, sta0, net0, a_pol, an_pol, mu, mun, G_base, p_art,
                              ttau, tau_base, P, cchi, aalpha, agrid, ahgrid, hmat,
                              start_period, wealth_threshold, budget,
                              u_help, u_move, u_state, u_attr, u_art):
    n = loc0.shape[0]
    T = G_base.shape[1]
    N = hmat.shape[1]
    loc_traj = np.zeros((n, T), dtype=np.int64)
    wea_traj = np.zeros((n, T), dtype=np.int64)
    sta_traj = np.zeros((n, T), dtype=np.int64)
    net_traj = np.zeros((n, T), dtype=np.int64)
    help_traj = np.zeros((n, T), dtype=np.int64)
    aid_traj = np.zeros((n, T), dtype=np.bool_)
    bad = np.zeros(n, dtype=np.bool_)

    remaining = budget
    spent = 0.0
    accepted = 0
    accepted_by_dest = np.zeros(N, dtype=np.int64)
    spend_timeline = np.zeros(T)
    budget_timeline = np.zeros(T)
    budget_timeline[0] = remaining

    loc_traj[:, 0] = loc0
    wea_traj[:, 0] = wea0
    sta_traj[:, 0] = sta0
    net_traj[:, 0] = net0

    for t in range(T - 1):
        active = t >= start_period and remaining > 0.0
        for i in range(n):
            loc, wea, sta, net = loc_traj[i, t], wea_traj[i, t], sta_traj[i, t], net_traj[i, t]
            granted = False

            if net == 1:
                next_wea = realized_wealth(an_pol[t, sta, wea, loc], agrid, ahgrid)
                h_real = draw_index(G_base[:, t], u_help[t, i])
                if h_real < 0:
                    bad[i] = True
                    continue
                dest_real = draw_index(mun[t, sta, wea, loc, :, h_real], u_move[t, i])
                dest, h = dest_real, h_real

                if active and wea <= wealth_threshold and dest_real >= 0:
                    # union of realized and artificial help vectors
                    h_union = 0
                    for j in range(N):
                        bit = hmat[h_real, j]
                        if u_art[t, i, j] < p_art[t, j]:
                            bit = 1
                        h_union = 2 * h_union + bit
                    dest_tilde = draw_index(mun[t, sta, wea, loc, :, h_union], u_move[t, i])

                    if dest_tilde >= 0 and dest_tilde != dest_real and dest_tilde != loc:
                        subsidy = (1.0 - aalpha) * tau_base[loc, dest_tilde]
                        if subsidy > 0.0 and remaining - subsidy >= -BUDGET_TOL:
                            dest, h = dest_tilde, h_union
                            granted = True
                            remaining -= subsidy
                            spent += subsidy
                            accepted += 1
                            accepted_by_dest[dest_tilde] += 1
                            spend_timeline[t] += subsidy
            else:
                next_wea = realized_wealth(a_pol[t, sta, wea, loc], agrid, ahgrid)
                h = 0
                dest = draw_index(mu[t, sta, wea, loc, :], u_move[t, i])
            if dest < 0:
                bad[i] = True
                continue

            next_wea, sta = move_or_stay(loc, dest, h, next_wea, sta, ttau, P, agrid, u_state[t, i])
            net = network_after_move(net, dest, cchi, u_attr[t, i])

            loc_traj[i, t + 1] = dest
            wea_traj[i, t + 1] = next_wea
            sta_traj[i, t + 1] = sta
            net_traj[i, t + 1] = net
            help_traj[i, t + 1] = h
            aid_traj[i, t + 1] = granted
        budget_timeline[t + 1] = remaining

    return (loc_traj, wea_traj, sta_traj, net_traj, help_traj, aid_traj, bad,
            remaining, spent, accepted, accepted_by_dest, spend_timeline, budget_timeline)


@njit(cache=True)
def simulate_shelter_kernel(loc0, wea0, sta0, net0, a_pol, an_pol, mu, mun, G_path,
                            ttau, P, cchi, agrid, ahgrid,
                            start_period, wealth_threshold, transfer_amount, grant_probability,
                            aid_location, budget,
                            u_help, u_move, u_state, u_attr, u_grant):
    n = loc0.shape[0]
    T = G_path.shape[1]
    loc_traj = np.zeros((n, T), dtype=np.int64)
    wea_traj = np.zeros((n, T), dtype=np.int64)
    sta_traj = np.zeros((n, T), dtype=np.int64)
    net_traj = np.zeros((n, T), dtype=np.int64)
    help_traj = np.zeros((n, T), dtype=np.int64)
    aid_traj = np.zeros((n, T), dtype=np.bool_)
    bad = np.zeros(n, dtype=np.bool_)

    remaining = budget
    spent = 0.0
    granted_count = 0
    spend_timeline = np.zeros(T)
    budget_timeline = np.zeros(T)
    budget_timeline[0] = remaining

    loc_traj[:, 0] = loc0
    wea_traj[:, 0] = wea0
    sta_traj[:, 0] = sta0
    net_traj[:, 0] = net0

    for t in range(T - 1):
        active = t >= start_period and remaining > 0.0
        for i in range(n):
            loc, wea, sta, net = loc_traj[i, t], wea_traj[i, t], sta_traj[i, t], net_traj[i, t]

            if net == 1:
                next_wea = realized_wealth(an_pol[t, sta, wea, loc], agrid, ahgrid)
            else:
                next_wea = realized_wealth(a_pol[t, sta, wea, loc], agrid, ahgrid)

            # transfer before the location choice
            granted = False
            if (active and loc == aid_location and wea <= wealth_threshold
                    and remaining >= transfer_amount and u_grant[t, i] < grant_probability):
                next_wea = nearest_index(agrid[next_wea] + transfer_amount, agrid)
                remaining -= transfer_amount
                spent += transfer_amount
                granted_count += 1
                spend_timeline[t] += transfer_amount
                granted = True

            if net == 1:
                h = draw_index(G_path[:, t], u_help[t, i])
                if h < 0:
                    bad[i] = True
                    continue
                dest = draw_index(mun[t, sta, wea, loc, :, h], u_move[t, i])
            else:
                h = 0
                dest = draw_index(mu[t, sta, wea, loc, :], u_move[t, i])
            if dest < 0:
                bad[i] = True
                continue

            next_wea, sta = move_or_stay(loc, dest, h, next_wea, sta, ttau, P, agrid, u_state[t, i])
            net = network_after_move(net, dest, cchi, u_attr[t, i])

            loc_traj[i, t + 1] = dest
            wea_traj[i, t + 1] = next_wea
            sta_traj[i, t + 1] = sta
            net_traj[i, t + 1] = net
            help_traj[i, t + 1] = h
            aid_traj[i, t + 1] = granted
        budget_timeline[t + 1] = remaining

    return (loc_traj, wea_traj, sta_traj, net_traj, help_traj, aid_traj, bad,
            remaining, spent, granted_count, spend_timeline, budget_timeline)


# =============================================================================
# Aggregation
# =============================================================================

def location_shares(location, network, N):
    """
    Shares of all agents (M_history) and of networked agents (MIN_history)
    at every location, [N, T] each.
    """
    n_agents, T = location.shape
    M_history = np.zeros((N, T))
    MIN_history = np.zeros((N, T))
    for t in range(T):
        M_history[:, t] = np.bincount(location[:, t], minlength=N) / n_agents
        MIN_history[:, t] = np.bincount(location[network[:, t] == 1, t], minlength=N) / n_agents
    return M_history, MIN_history


def _raise_if_bad(bad):
    if np.any(bad):
        agents = np.flatnonzero(bad)
        raise ValueError(f"Probability rows summing to zero met by {agents.size} agents "
                         f"(first: agent {agents[0]}); the policy or help path is malformed.")


def _required_fields(program, fields, label):
    for field in fields:
        if program.get(field) is None:
            raise ValueError(f"{label} aid program must include a '{field}' field.")


# =============================================================================
# Public entry points
# =============================================================================

def simulate_agents(m0, pol, G_path, params, grids, shocks=None, seed=12345):
    """
    Benchmark forward simulation.

    Arguments:
    ----------
    m0     = initial panel, dict of int arrays location/wealth/state/network
    pol    = policies (single period or stacked over T-1 periods)
    G_path = help distribution --> np.array, size HxT

    Output:
    ----------
    M_history, MIN_history [N, T], agent_data (trajectories [n, T])
    """
    G_path = np.asarray(G_path, dtype=float)
    T = G_path.shape[1]
    pol = as_policy_sequence(pol, T)
    init, shocks, T = _check_inputs(m0, pol, G_path, params, grids, shocks, seed)

    loc, wea, sta, net, help_idx, bad = simulate_benchmark_kernel(
        init['location'], init['wealth'], init['state'], init['network'],
        pol['a'], pol['an'], pol['mu'], pol['mun'], G_path,
        params['ttau'], params['P'], params['cchi'], grids['agrid'], grids['ahgrid'],
        shocks['help'], shocks['move'], shocks['state'], shocks['attrition'])
    _raise_if_bad(bad)

    M_history, MIN_history = location_shares(loc, net, params['ttau'].shape[0])
    agent_data = dict(location=loc, wealth=wea, state=sta, network=net, help_index=help_idx)
    return M_history, MIN_history, agent_data


def simulate_agents_transport_aid(m0, pol, G_base, G_aug, params, grids, program,
                                  shocks=None, seed=12345):
    """
    Forward simulation under a budget-constrained transport subsidy.

    Networked agents that are eligible (program active, wealth index at or
    below program['wealth_threshold']) redraw their destination under the
    union of their realized help vector and an artificial one built from
    the gap between augmented and base offer probabilities, using the same
    uniform draw as the baseline choice. If that destination differs from
    both the baseline choice and the current location and the budget covers
    the subsidy (1 - aalpha) * tau_base, the agent moves there.

    Output: M_history, MIN_history, agent_data, stats
    """
    _required_fields(program, ('start_period', 'wealth_threshold', 'budget'), 'Transport')
    G_base = np.asarray(G_base, dtype=float)
    G_aug = np.asarray(G_aug, dtype=float)
    if G_aug.shape != G_base.shape:
        raise ValueError(f"Augmented help path {G_aug.shape} does not match the base path {G_base.shape}.")
    T = G_base.shape[1]
    pol = as_policy_sequence(pol, T)
    init, shocks, T = _check_inputs(m0, pol, G_base, params, grids, shocks, seed)
    N = params['ttau'].shape[0]

    # per-location artificial offer probability implied by the extra helpers
    P_base = marginal_help_probabilities(G_base.T, N)         # [T, N]
    P_aug = marginal_help_probabilities(G_aug.T, N)
    p_art = np.clip((P_aug - P_base) / np.maximum(1.0 - P_base, np.finfo(float).eps), 0.0, 1.0)

    start = min(max(int(program['start_period']), 0), T - 1)
    budget = float(program['budget'])
    (loc, wea, sta, net, help_idx, aid, bad, remaining, spent, accepted, by_dest,
     spend_timeline, budget_timeline) = simulate_transport_kernel(
        init['location'], init['wealth'], init['state'], init['network'],
        pol['a'], pol['an'], pol['mu'], pol['mun'], G_base, p_art,
        params['ttau'], params['tau_base'], params['P'], params['cchi'], params['aalpha'],
        grids['agrid'], grids['ahgrid'], help_matrix(N).astype(np.int64),
        start, int(program['wealth_threshold']), budget,
        shocks['help'], shocks['move'], shocks['state'], shocks['attrition'], shocks['artificial'])
    _raise_if_bad(bad)

    M_history, MIN_history = location_shares(loc, net, N)
    agent_data = dict(location=loc, wealth=wea, state=sta, network=net, help_index=help_idx,
                      aid_accepted=aid)
    stats = dict(
        initial_budget=budget,
        remaining_budget=remaining,
        final_budget=remaining,
        total_aid_spent=spent,
        accepted_moves=int(accepted),
        accepted_by_destination=by_dest,
        aid_spending_timeline=spend_timeline,
        budget_timeline=budget_timeline,
    )
    return M_history, MIN_history, agent_data, stats


def simulate_agents_shelter_aid(m0, pol, G_path, params, grids, program, shocks=None, seed=12345):
    """
    Forward simulation with food-and-shelter transfers: agents at
    program['location'] (default 1) with wealth index at or below the
    threshold receive program['transfer_amount'] with probability
    program['grant_probability'] while the budget lasts, before choosing
    where to go next.

    Output: M_history, MIN_history, agent_data, stats
    """
    _required_fields(program, ('start_period', 'wealth_threshold', 'transfer_amount',
                               'grant_probability', 'budget'), 'Shelter')
    G_path = np.asarray(G_path, dtype=float)
    T = G_path.shape[1]
    pol = as_policy_sequence(pol, T)
    init, shocks, T = _check_inputs(m0, pol, G_path, params, grids, shocks, seed)
    N = params['ttau'].shape[0]

    aid_location = int(program.get('location', 1))
    if not 0 <= aid_location < N:
        raise ValueError(f"Shelter aid location must lie in 0..{N - 1}, got {aid_location}.")

    start = min(max(int(program['start_period']), 0), T - 1)
    budget = float(program['budget'])
    (loc, wea, sta, net, help_idx, aid, bad, remaining, spent, granted,
     spend_timeline, budget_timeline) = simulate_shelter_kernel(
        init['location'], init['wealth'], init['state'], init['network'],
        pol['a'], pol['an'], pol['mu'], pol['mun'], G_path,
        params['ttau'], params['P'], params['cchi'], grids['agrid'], grids['ahgrid'],
        start, int(program['wealth_threshold']), float(program['transfer_amount']),
        float(program['grant_probability']), aid_location, budget,
        shocks['help'], shocks['move'], shocks['state'], shocks['attrition'], shocks['grant'])
    _raise_if_bad(bad)

    M_history, MIN_history = location_shares(loc, net, N)
    agent_data = dict(location=loc, wealth=wea, state=sta, network=net, help_index=help_idx,
                      aid_receipt=aid)
    stats = dict(
        initial_budget=budget,
        remaining_budget=remaining,
        final_budget=remaining,
        total_aid_spent=spent,
        transfers_granted=int(granted),
        aid_spending_timeline=spend_timeline,
        budget_timeline=budget_timeline,
    )
    return M_history, MIN_history, agent_data, stats
