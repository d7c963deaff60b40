"""
Help-offer process.

Each location j independently offers help with probability
pi_j = M_j ** ggamma, where M_j is the networked mass at j. A help
configuration is a binary vector h in {0,1}^N; configurations are
enumerated in canonical binary order (index h, most significant bit at
location 0), so H = 2^N. This dense enumeration is only meant for N in the
single digits.
"""

import numpy as np


def help_matrix(N):
    ''' [2^N, N] 0/1 matrix, row h is the binary expansion of h '''
    shifts = np.arange(N - 1, -1, -1)
    return (np.arange(2 ** N)[:, None] >> shifts[None, :]) & 1


def help_index(vec):
    ''' Configuration index of a binary help vector (inverse of help_matrix) '''
    vec = np.asarray(vec, dtype=np.int64)
    N = vec.shape[-1]
    powers = 2 ** np.arange(N - 1, -1, -1)
    return vec @ powers


def compute_G(M, ggamma):
    """
    Probability mass function over help vectors.

    Arguments:
    ----------
    M      = networked masses --> np.array, size N or NxT
    ggamma = elasticity of the offer probability --> float >= 0

    Output:
    ----------
    G = probability of every help vector --> np.array, size H or HxT
    """
    if ggamma < 0:
        raise ValueError(f"The help elasticity must be non-negative, got {ggamma}.")
    M = np.asarray(M, dtype=float)
    squeeze = M.ndim == 1
    if squeeze:
        M = M[:, None]
    N = M.shape[0]

    # 0 ** 0 = 1: with ggamma = 0 every location offers help
    pi = np.clip(M, 0.0, 1.0) ** ggamma                       # [N, T]
    hmat = help_matrix(N)[:, :, None]                          # [H, N, 1]
    G = np.where(hmat == 1, pi[None, :, :], 1.0 - pi[None, :, :]).prod(axis=1)
    return G[:, 0] if squeeze else G


def marginal_help_probabilities(G, N):
    """Per-location offer probability implied by a pmf over configurations."""
    return np.asarray(G) @ help_matrix(N)


def migration_costs_with_help(tau, aalpha):
    """
    Expand the base cost matrix tau [N, N] into ttau [N, N, H]: the cost of
    moving to any destination flagged in configuration h is scaled by aalpha.
    """
    N = tau.shape[0]
    hmat = help_matrix(N)
    scale = np.where(hmat == 1, aalpha, 1.0)                   # [H, N] by destination
    return tau[:, :, None] * scale.T[None, :, :]


def transport_aid_help_path(M_path, ggamma, program):
    '''
    Augmented help distribution financed by a transport-aid budget: from
    program['start_period'] on, the offer probabilities are evaluated at
    M + program['mass_increase'] (scalar or one entry per location).
    Returns the [H, T] path.
    '''
    for field in ('mass_increase', 'start_period'):
        if program.get(field) is None:
            raise ValueError(f"Transport aid program must include a '{field}' field.")

    N, T = M_path.shape
    mass_increase = np.atleast_1d(np.asarray(program['mass_increase'], dtype=float)).ravel()
    if mass_increase.size == 1:
        mass_increase = np.repeat(mass_increase, N)
    elif mass_increase.size != N:
        raise ValueError(f"mass_increase must be a scalar or have {N} entries, got {mass_increase.size}.")

    start = min(max(int(program['start_period']), 0), T - 1)
    M_aug = M_path.copy()
    M_aug[:, start:] += mass_increase[:, None]
    return compute_G(M_aug, ggamma)
