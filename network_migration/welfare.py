"""
Welfare and arrival-timing summaries of a simulated transition.
"""

import numpy as np


def compute_welfare(bbeta, vf_path, agent_data, horizon):
    """
    Total discounted welfare of a scenario:
        sum_i sum_{t < horizon} bbeta^(t+1) * V_t(state, wealth, location)
    reading Vn for agents that are networked in period t. The horizon is
    truncated to what both the value path and the trajectories cover.
    """
    V, Vn = np.asarray(vf_path['V']), np.asarray(vf_path['Vn'])
    location = np.asarray(agent_data['location'])
    horizon = min(int(horizon), V.shape[0], location.shape[1])
    if horizon < 1:
        return 0.0

    per_agent = agent_welfare(bbeta, V, Vn, agent_data, horizon)
    return float(np.sum(per_agent))


def agent_welfare(bbeta, V, Vn, agent_data, horizon):
    """Discounted realized value of every agent, [n]."""
    location = np.asarray(agent_data['location'])
    wealth = np.asarray(agent_data['wealth'])
    state = np.asarray(agent_data['state'])
    network = np.asarray(agent_data['network'])

    total = np.zeros(location.shape[0])
    for t in range(horizon):
        s, a, n = state[:, t], wealth[:, t], location[:, t]
        values = np.where(network[:, t] != 0, Vn[t, s, a, n], V[t, s, a, n])
        total += bbeta ** (t + 1) * values
    return total


def first_arrival_periods(location_path, destinations):
    """
    First period in which each agent arrives at each destination, i.e. is
    there in t after being elsewhere in t-1. Agents that start at a
    destination are not counted as arriving. Returns [n, len(destinations)]
    floats, NaN for agents that never arrive.
    """
    location_path = np.asarray(location_path)
    destinations = np.atleast_1d(destinations)
    out = np.full((location_path.shape[0], destinations.size), np.nan)

    for k, loc in enumerate(destinations):
        arrivals = (location_path[:, 1:] == loc) & (location_path[:, :-1] != loc)
        has_arrival = arrivals.any(axis=1)
        first = np.argmax(arrivals, axis=1) + 1
        out[has_arrival, k] = first[has_arrival]
    return out


def arrival_years(arrival_periods, periods_per_year=2):
    """Convert 0-based arrival periods to 1-based model years (NaN kept)."""
    return np.ceil((np.asarray(arrival_periods, dtype=float) + 1) / periods_per_year)
