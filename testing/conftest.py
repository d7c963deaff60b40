"""
Shared small-model fixtures. Grids and horizons are kept tiny so the whole
suite (including Numba compilation) runs in seconds.
"""

import numpy as np
import pytest

from network_migration.backward import no_help_equilibrium
from network_migration.setup_model import create_initial_distribution, iteration_settings, setup_model

SMALL = dict(N=4, B=2, Na=6, na=40)
ONE_LOCATION = dict(
    A=[0.5], B=[1.5], f0=[0.8], f1=[0.9], g0=[0.05], g1=[0.05],
    hat_ttau=[3.0], tilde_ttau=[],
)


@pytest.fixture(scope="session")
def small_model():
    dims, params, grids, matrices = setup_model(**SMALL)
    settings = iteration_settings(T=4, Nagents=200, MaxItV=5, MaxItJ=2, seed=7)
    vf_nh, pol_nh, _ = no_help_equilibrium(params, grids, matrices, settings)
    m0 = create_initial_distribution(dims, settings['Nagents'], seed=3)
    return dict(dims=dims, params=params, grids=grids, matrices=matrices,
                settings=settings, vf_nh=vf_nh, pol_nh=pol_nh, m0=m0)


@pytest.fixture(scope="session")
def one_location_model():
    dims, params, grids, matrices = setup_model(N=1, B=2, Na=6, na=40, param_overrides=ONE_LOCATION)
    settings = iteration_settings(T=4, Nagents=50, MaxItV=3, MaxItJ=5, seed=7)
    vf_nh, _, _ = no_help_equilibrium(params, grids, matrices, settings)
    m0 = create_initial_distribution(dims, settings['Nagents'], seed=3)
    return dict(dims=dims, params=params, grids=grids, matrices=matrices,
                settings=settings, vf_nh=vf_nh, m0=m0)


@pytest.fixture(scope="session")
def stay_policy():
    """Builder of a single-period policy that never moves and saves nothing."""
    def build(dims):
        S, Na, N, H = dims['S'], dims['Na'], dims['N'], dims['H']
        eye = np.eye(N)
        return dict(
            a=np.zeros((S, Na, N), dtype=np.int64),
            an=np.zeros((S, Na, N), dtype=np.int64),
            mu=np.broadcast_to(eye, (S, Na, N, N)).copy(),
            mun=np.broadcast_to(eye[:, :, None], (S, Na, N, N, H)).copy(),
        )
    return build
