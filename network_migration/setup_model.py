"""
Model setup: dimensions, structural parameters, grids, precomputed payoff
tensors, initial agent panel and iteration settings.

Indexing is 0-based everywhere: location 0 is the home location of the
network (the origin), state 0 is the baseline idiosyncratic state that
agents are reset to after a move.

Joint state s = (employment, integration):
    s in 0..B-1     -> unemployed, integration level s
    s in B..2B-1    -> employed,   integration level s - B
"""

import numpy as np

from network_migration.help_probabilities import compute_G, migration_costs_with_help

# =============================================================================
# Default calibration
# =============================================================================

N_LOCATIONS = 4         # Number of locations (origin + destinations)
N_INTEGRATION = 6       # Integration (psi) levels
NA_COARSE = 15          # Coarse asset grid (value-function state space)
NA_FINE = 5000          # Fine asset grid (savings choice)

BBETA = 0.996315        # Discount factor
SSIGMA = 2.00           # Risk aversion
CONS = 1e2              # Value function scaling constant

LB_A, UP_A, CA = 0.0, 40.0, 3.0     # Asset grid bounds and curvature
LB_AM, UB_AM = 0.3, 5.0             # Amenity multiplier bounds
LB_PR, UB_PR = 1.2, 2.9             # Productivity multiplier bounds

A_LOC = [0.5, 1.2, 3.8, 6.5]        # Productivity by location
B_LOC = [1.5, 1.4, 1.0, 0.85]       # Amenities by location
F0 = [0.8, 0.6, 0.60, 0.60]         # Min job-finding probability
F1 = [0.9, 0.7, 0.95, 0.95]         # Max job-finding probability
G0_SEP = [0.05, 0.03, 0.02, 0.02]   # Min separation probability
G1_SEP = [0.05, 0.03, 0.02, 0.02]   # Max separation probability

TILDE_TTAU = [2.0, 3.5, 12.0]       # Transport costs between adjacent locations
HAT_TTAU = [3.0, 0.5, 3.5, 6.0]     # Fixed entry costs by destination
AALPHA = 0.50                       # Help discount on migration costs
NNU = 0.1                           # Scale of location taste shocks

GGAMMA = 0.60                       # Elasticity of help probability wrt migrant stock
CCHI = 0.22                         # Probability of losing network ties away from home

BASE_UP_PSI = 0.08                  # Base upward integration probability
TOP_DIFFICULTY = 1.0                # Difficulty of reaching the top integration level

LOCATION_FIELDS = ('A', 'bbi', 'B', 'f0', 'f1', 'g0', 'g1', 'hat_ttau')


# =============================================================================
# Dimensions and settings
# =============================================================================

def set_dimensions(N=N_LOCATIONS, B=N_INTEGRATION, Na=NA_COARSE, na=NA_FINE):
    """Core dimensions of the state space. H enumerates all 2^N help vectors."""
    if N < 1 or B < 1:
        raise ValueError(f"Need at least one location and one integration level, got N={N}, B={B}.")
    if Na < 2 or na < 2:
        raise ValueError(f"Asset grids need at least two points, got Na={Na}, na={na}.")
    return dict(N=N, B=B, S=2 * B, H=2 ** N, Na=Na, na=na)


def iteration_settings(**overrides):
    """Iteration controls and simulation length."""
    settings = dict(
        tolV=0.5,       # tolerance of the no-help value iteration
        tolM=1e-2,      # tolerance of the networked-mass fixed point
        MaxItV=40,      # cap on no-help value iterations
        MaxItJ=2,       # cap on outer equilibrium iterations
        Nagents=5000,   # simulated agents
        T=100,          # periods per trajectory
        seed=12345,     # seed for the common random numbers of the simulation
    )
    for key, value in overrides.items():
        if key not in settings:
            raise ValueError(f"Unknown iteration setting '{key}'.")
        settings[key] = value
    if settings['T'] < 2:
        raise ValueError("The transition horizon T must be at least 2.")
    return settings


# =============================================================================
# Transition matrices
# =============================================================================

def build_markov_matrix_difficult_at_top(K, base_up, shock_prob=0.0, top_difficulty=TOP_DIFFICULTY):
    '''
    Row-stochastic K x K matrix (rows = current level). From level i the chain
    moves up with probability base_up * (1 - top_difficulty * i / (K-1)),
    down with probability shock_prob, and stays otherwise. The top level
    cannot move up and the bottom level cannot move down.
    '''
    if base_up + shock_prob > 1:
        raise ValueError("base_up + shock_prob must be <= 1 to keep probabilities valid.")

    def up_prob(i):
        if i >= K - 1:
            return 0.0
        frac = i / (K - 1)
        return base_up * max(1.0 - top_difficulty * frac, 0.0)

    P = np.zeros((K, K))
    for i in range(K):
        if K == 1:
            P[i, i] = 1.0
        elif i == 0:
            P[i, i] = 1.0 - up_prob(i)
            P[i, i + 1] = up_prob(i)
        elif i == K - 1:
            P[i, i] = 1.0 - shock_prob
            P[i, i - 1] = shock_prob
        else:
            stay = 1.0 - shock_prob - up_prob(i)
            if stay < 0:
                raise ValueError(f"Markov probabilities < 0 at state {i}. Adjust the parameters.")
            P[i, i - 1] = shock_prob
            P[i, i + 1] = up_prob(i)
            P[i, i] = stay
    return P


def build_joint_transition(Pb, f, g):
    """
    Joint transition over s = (employment, psi) for every location.

    Pb is [B, B, N] row-stochastic, f and g are [B, N] job-finding and
    separation probabilities by current psi. Returns P [S, S, N] with rows =
    next state and columns = current state, each column summing to one:

        P[:, :, n] = [[UU, EU],
                      [UE, EE]]
    """
    B, _, N = Pb.shape
    if f.shape != (B, N) or g.shape != (B, N):
        raise ValueError(f"f and g must be [{B} x {N}], got {f.shape} and {g.shape}.")

    P = np.zeros((2 * B, 2 * B, N))
    for n in range(N):
        Puse = Pb[:, :, n].T            # columns = current psi
        p = np.clip(f[:, n], 0.0, 1.0)
        q = np.clip(g[:, n], 0.0, 1.0)

        UU = Puse * (1.0 - p)[None, :]
        UE = Puse * p[None, :]
        EU = Puse * q[None, :]
        EE = Puse * (1.0 - q)[None, :]

        block = np.block([[UU, EU], [UE, EE]])
        block = np.maximum(block, 0.0)
        P[:, :, n] = block / block.sum(axis=0, keepdims=True)
    return P


def base_migration_costs(tilde_ttau, hat_ttau):
    """tau[i, j] = entry cost of j + transport costs along the corridor i..j."""
    N = len(hat_ttau)
    tau = np.zeros((N, N))
    for ii in range(N):
        for jj in range(ii + 1, N):
            transport = np.sum(tilde_ttau[ii:jj])
            tau[ii, jj] = hat_ttau[jj] + transport
            tau[jj, ii] = hat_ttau[ii] + transport
    return tau


# =============================================================================
# Parameters
# =============================================================================

def set_parameters(dims, **overrides):
    """
    Structural parameters. Location vectors default to the four-location
    calibration; models with a different N must override every one of them
    (and tilde_ttau, of length N-1).
    """
    N, B = dims['N'], dims['B']
    params = dict(
        bbeta=BBETA, ssigma=SSIGMA, CONS=CONS,
        lb_a=LB_A, up_a=UP_A, ca=CA,
        lb_am=LB_AM, ub_am=UB_AM, lb_pr=LB_PR, ub_pr=UB_PR,
        A=A_LOC, B=B_LOC, f0=F0, f1=F1, g0=G0_SEP, g1=G1_SEP,
        tilde_ttau=TILDE_TTAU, hat_ttau=HAT_TTAU,
        aalpha=AALPHA, nnu=NNU, ggamma=GGAMMA, cchi=CCHI,
        baseUp_psi=BASE_UP_PSI, topDiff=TOP_DIFFICULTY,
    )
    params['bbi'] = None
    for key, value in overrides.items():
        if key not in params:
            raise ValueError(f"Unknown parameter '{key}'.")
        params[key] = value

    params['A'] = np.asarray(params['A'], dtype=float)
    if params['bbi'] is None:
        params['bbi'] = 0.5 * params['A']
    for key in LOCATION_FIELDS + ('tilde_ttau',):
        params[key] = np.asarray(params[key], dtype=float).ravel()
    for key in LOCATION_FIELDS:
        if params[key].shape != (N,):
            raise ValueError(f"Parameter '{key}' must have one entry per location ({N}), "
                             f"got shape {params[key].shape}.")
    if params['tilde_ttau'].shape != (N - 1,):
        raise ValueError(f"Parameter 'tilde_ttau' must have N-1 = {N - 1} entries, "
                         f"got shape {params['tilde_ttau'].shape}.")

    params['tau_base'] = base_migration_costs(params['tilde_ttau'], params['hat_ttau'])
    params['ttau'] = migration_costs_with_help(params['tau_base'], params['aalpha'])

    Pb = build_markov_matrix_difficult_at_top(B, params['baseUp_psi'], 0.0, params['topDiff'])
    params['Pb'] = np.repeat(Pb[:, :, None], N, axis=2)

    levels = np.linspace(0.0, 1.0, B)
    params['f'] = (params['f0'][:, None] + (params['f1'] - params['f0'])[:, None] * levels[None, :]).T
    params['g'] = (params['g0'][:, None] + (params['g1'] - params['g0'])[:, None] * levels[None, :]).T
    params['P'] = build_joint_transition(params['Pb'], params['f'], params['g'])

    params['G0'] = compute_G(np.zeros(N), params['ggamma'])
    return params


# =============================================================================
# Grids and precomputed matrices
# =============================================================================

def create_asset_grid(n, lb, ub, curvature):
    """Power-spaced asset grid, denser close to the lower bound."""
    return lb + (ub - lb) * np.linspace(0.0, 1.0, n) ** curvature


def set_grids(dims, params):
    return dict(
        agrid=create_asset_grid(dims['Na'], params['lb_a'], params['up_a'], params['ca']),
        ahgrid=create_asset_grid(dims['na'], params['lb_a'], params['up_a'], params['ca']),
        psi=np.linspace(0.0, 1.0, dims['B']),
    )


def income_by_state(dims, params, grids):
    """[S, N] period income: benefits when unemployed, wages when employed."""
    B = dims['B']
    psi = grids['psi']
    productivity = params['lb_pr'] * (1 - psi) + params['ub_pr'] * psi    # [B]
    unemployed = np.repeat(params['bbi'][None, :], B, axis=0)
    employed = productivity[:, None] * params['A'][None, :]
    return np.vstack([unemployed, employed])


def amenity_by_state(dims, params, grids):
    """[S, N] utility weights, increasing in integration."""
    psi = grids['psi']
    weight = params['lb_am'] * (1 - psi) + params['ub_am'] * psi
    amenity = weight[:, None] * params['B'][None, :]
    return np.vstack([amenity, amenity])


def construct_matrices(dims, params, grids):
    """
    Precompute the payoff tensors reused by every Bellman update.

    Output:
    ----------
    Ue      = period utility [S, Na, N, na] of choosing fine-grid savings a'
              from coarse wealth a; infeasible consumption gets the most
              negative float.
    a_prime = post-migration wealth [Na, N, N, H] = agrid - ttau(i, j, h).
    """
    agrid, ahgrid = grids['agrid'], grids['ahgrid']
    income = income_by_state(dims, params, grids)
    amenity = amenity_by_state(dims, params, grids)

    cons = (agrid[None, :, None, None] / params['bbeta'] + income[:, None, :, None]
            - ahgrid[None, None, None, :])
    feasible = cons > 0
    Ue = np.full(cons.shape, -np.finfo(float).max)
    weight = np.broadcast_to(amenity[:, None, :, None], cons.shape)
    Ue[feasible] = weight[feasible] * np.log(1.0 + cons[feasible])

    a_prime = agrid[:, None, None, None] - params['ttau'][None, :, :, :]
    return dict(Ue=Ue, a_prime=a_prime)


# =============================================================================
# Initial distribution
# =============================================================================

def create_initial_distribution(dims, n_agents, seed=0):
    """Everyone starts at home and networked, with random state and wealth."""
    rng = np.random.default_rng(seed)
    return dict(
        location=np.zeros(n_agents, dtype=np.int64),
        wealth=rng.integers(0, dims['Na'], n_agents).astype(np.int64),
        state=rng.integers(0, dims['S'], n_agents).astype(np.int64),
        network=np.ones(n_agents, dtype=np.int64),
    )


def setup_model(N=N_LOCATIONS, B=N_INTEGRATION, Na=NA_COARSE, na=NA_FINE, param_overrides=None):
    """Convenience wrapper returning (dims, params, grids, matrices)."""
    dims = set_dimensions(N=N, B=B, Na=Na, na=na)
    params = set_parameters(dims, **(param_overrides or {}))
    grids = set_grids(dims, params)
    matrices = construct_matrices(dims, params, grids)
    return dims, params, grids, matrices
