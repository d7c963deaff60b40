"""
Network-help migration model: benchmark transition and aid counterfactuals.

Pipeline:
    1) setup: dimensions, parameters, grids, payoff tensors, initial panel
    2) stationary no-help values (terminal condition)
    3) benchmark dynamic equilibrium
    4) transport-aid and food-and-shelter aid counterfactuals (early and late)

Usage:
    python -m network_migration.main --T 20 --agents 2000 --na 500 --scenario all
"""

import argparse
import json
import os
import time

import numpy as np
import pandas as pd

from network_migration.backward import no_help_equilibrium
from network_migration.equilibrium import (
    initial_mass_guess,
    run_scenario_simulation,
    solve_dynamic_equilibrium,
)
from network_migration.setup_model import (
    NA_COARSE,
    NA_FINE,
    N_INTEGRATION,
    N_LOCATIONS,
    create_initial_distribution,
    iteration_settings,
    setup_model,
)
from network_migration.simulation import draw_shocks
from network_migration.welfare import arrival_years, compute_welfare, first_arrival_periods

# Aid programs. Periods and wealth thresholds are 0-based indices; a wealth
# threshold k makes the k+1 poorest coarse grid points eligible.
TRANSPORT_AID = dict(
    type='transport',
    start_period=0,
    wealth_threshold=12,
    mass_increase=[0.0, 0.0, 0.90, 0.90],   # no artificial helpers at home or at the first destination
    budget=3000.0,
)
SHELTER_AID = dict(
    type='shelter',
    start_period=0,
    wealth_threshold=9,
    transfer_amount=1.2,
    grant_probability=0.90,
    budget=3000.0,
    location=1,
)
LATE_TRANSPORT_AID = dict(TRANSPORT_AID, start_period=4, mass_increase=[0.0, 0.0, 0.98, 0.98])
LATE_SHELTER_AID = dict(SHELTER_AID, start_period=4)

SCENARIO_PROGRAMS = {
    'benchmark': dict(type='benchmark'),
    'transport': TRANSPORT_AID,
    'shelter': SHELTER_AID,
    'late_transport': LATE_TRANSPORT_AID,
    'late_shelter': LATE_SHELTER_AID,
}


def run_scenario(name, program, M0, vf_nh, m0, params, grids, matrices, settings, welfare_horizon):
    print(f"\n--- Scenario: {name} ---")
    t0 = time.time()
    eqm = solve_dynamic_equilibrium(M0, vf_nh, m0, params, grids, matrices, settings,
                                    scenario=program, verbose=True)

    # final pass with the converged masses and policies
    N, T = eqm['M'].shape
    shocks = draw_shocks(len(m0['location']), T, N, settings['seed'])
    sim = run_scenario_simulation(program, eqm['M'], m0, eqm['policies'], params, grids, shocks)

    n_agents = len(m0['location'])
    welfare = compute_welfare(params['bbeta'], eqm['vf_path'], sim['agent_data'], welfare_horizon)
    arrivals = first_arrival_periods(sim['agent_data']['location'], np.arange(1, N))
    years = arrival_years(arrivals)

    summary = dict(
        scenario=name,
        iterations=int(eqm['iterations']),
        converged=bool(eqm['converged']),
        diff=float(eqm['diff']),
        diff_history=[float(d) for d in eqm['diff_history']],
        final_shares=sim['M_history'][:, -1].tolist(),
        final_network_shares=sim['MIN_history'][:, -1].tolist(),
        welfare_per_agent=welfare / n_agents,
        mean_arrival_year={int(d): (float(np.nanmean(years[:, k])) if np.any(~np.isnan(years[:, k])) else None)
                           for k, d in enumerate(range(1, N))},
        elapsed_seconds=time.time() - t0,
    )
    if 'stats' in sim:
        stats = sim['stats']
        summary['aid'] = {k: (v.tolist() if isinstance(v, np.ndarray) else v) for k, v in stats.items()}
        if 'accepted_moves' in stats:
            print(f"  Accepted moves with aid: {stats['accepted_moves']}")
        if 'transfers_granted' in stats:
            print(f"  Transfers granted: {stats['transfers_granted']}")
        print(f"  Aid spent: {stats['total_aid_spent']:.2f} (budget remaining: {stats['final_budget']:.2f})")
    print(f"  Welfare per agent: {summary['welfare_per_agent']:.4f}")
    return summary, sim


def shares_frame(name, sim):
    """Long table of total and networked shares by period and location."""
    M, MIN = sim['M_history'], sim['MIN_history']
    N, T = M.shape
    return pd.DataFrame(dict(
        scenario=name,
        period=np.tile(np.arange(T), N),
        location=np.repeat(np.arange(N), T),
        share=M.ravel(),
        network_share=MIN.ravel(),
    ))


def main():
    parser = argparse.ArgumentParser(description="Network-help migration: dynamic equilibrium and aid counterfactuals")
    parser.add_argument("--T", type=int, default=100, help="Transition horizon")
    parser.add_argument("--agents", type=int, default=5000, help="Number of simulated agents")
    parser.add_argument("--B", type=int, default=N_INTEGRATION, help="Integration levels")
    parser.add_argument("--Na", type=int, default=NA_COARSE, help="Coarse asset grid points")
    parser.add_argument("--na", type=int, default=NA_FINE, help="Fine asset grid points")
    parser.add_argument("--max_iter", type=int, default=2, help="Cap on outer equilibrium iterations")
    parser.add_argument("--seed", type=int, default=12345, help="Seed of the simulation shocks")
    parser.add_argument("--welfare_horizon", type=int, default=None, help="Periods entering welfare (default T)")
    parser.add_argument("--scenario", type=str, default="all",
                        choices=list(SCENARIO_PROGRAMS) + ["all"])
    parser.add_argument("--output_dir", type=str, default="outputs")
    args = parser.parse_args()

    os.makedirs(args.output_dir, exist_ok=True)

    print("=" * 80); print("NETWORK-HELP MIGRATION: DYNAMIC EQUILIBRIUM"); print("=" * 80)
    settings = iteration_settings(T=args.T, Nagents=args.agents, MaxItJ=args.max_iter, seed=args.seed)
    print(f"\n[CONFIG]\n  Locations: {N_LOCATIONS}, integration levels: {args.B}"
          f"\n  Assets: coarse {args.Na}, fine {args.na}"
          f"\n  Agents: {settings['Nagents']} over {settings['T']} periods")

    print("\nStep 1: Model setup")
    dims, params, grids, matrices = setup_model(N=N_LOCATIONS, B=args.B, Na=args.Na, na=args.na)
    m0 = create_initial_distribution(dims, settings['Nagents'], seed=settings['seed'])

    print("\nStep 2: No-help value and policy functions")
    t0 = time.time()
    vf_nh, _, it_nh = no_help_equilibrium(params, grids, matrices, settings, verbose=True)
    print(f"  Done in {it_nh} iterations ({time.time() - t0:.1f}s)")

    M0 = initial_mass_guess(dims['N'], settings['T'])
    horizon = args.welfare_horizon or settings['T']
    names = list(SCENARIO_PROGRAMS) if args.scenario == "all" else [args.scenario]
    if 'benchmark' not in names:
        names = ['benchmark'] + names

    print("\nStep 3: Dynamic equilibria")
    summaries, frames = [], []
    for name in names:
        summary, sim = run_scenario(name, SCENARIO_PROGRAMS[name], M0, vf_nh, m0, params, grids, matrices,
                                    settings, horizon)
        summaries.append(summary)
        frames.append(shares_frame(name, sim))

    with open(os.path.join(args.output_dir, 'summary.json'), 'w') as f:
        json.dump(dict(settings=settings, scenarios=summaries), f, indent=2)
    pd.concat(frames, ignore_index=True).to_csv(os.path.join(args.output_dir, 'shares.csv'), index=False)

    print("\nResults Summary")
    print(f"{'Scenario':>16} {'Iter':>6} {'Conv':>6} {'Welfare':>12} " +
          " ".join(f"{'loc ' + str(n):>8}" for n in range(dims['N'])))
    print("-" * (44 + 9 * dims['N']))
    for s in summaries:
        shares = " ".join(f"{x:>8.4f}" for x in s['final_shares'])
        print(f"{s['scenario']:>16} {s['iterations']:>6d} {str(s['converged']):>6} "
              f"{s['welfare_per_agent']:>12.4f} {shares}")
    print(f"\nSaved results to {args.output_dir}")


if __name__ == "__main__":
    main()
