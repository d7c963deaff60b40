"""
End-to-end run of the command line on a tiny model.
"""

import json
import os
import sys

import pandas as pd
import pytest

from network_migration import main as cli


def test_command_line_writes_summary(tmp_path, monkeypatch):
    out = tmp_path / "outputs"
    monkeypatch.setattr(sys, "argv", [
        "network_migration.main", "--T", "3", "--agents", "60", "--B", "2", "--Na", "6", "--na", "30",
        "--max_iter", "1", "--scenario", "shelter", "--output_dir", str(out),
    ])
    cli.main()

    with open(os.path.join(out, "summary.json")) as f:
        summary = json.load(f)
    names = [s['scenario'] for s in summary['scenarios']]
    assert names == ['benchmark', 'shelter']
    assert summary['scenarios'][1]['aid']['initial_budget'] == 3000.0
    assert sum(summary['scenarios'][0]['final_shares']) == pytest.approx(1.0)

    shares = pd.read_csv(os.path.join(out, "shares.csv"))
    assert len(shares) == 2 * 4 * 3
    assert set(shares['scenario']) == {'benchmark', 'shelter'}