import os
from time import time
from dataclasses import replace
from concurrent.futures import ProcessPoolExecutor, as_completed

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns

from Blocksize.Config import Miner, Target, default_config
from Blocksize.Simulator import Simulator

SWEEPS = {
    'producer_hashrate': [0, 1, 2, 3, 4, 5, 6, 8],
    'far_delay': [0, 20, 40, 80, 160],
    'difficulty': [3000, 6000, 12000, 24000],
}

LABELS = {
    'producer_hashrate': 'Heavy Producer Hashes per Tick',
    'far_delay': 'Extra Propagation Delay (ticks)',
    'difficulty': 'Hashes per Block',
}

def configure(base, param, value):
    if param == 'producer_hashrate':
        miners = [Miner(m.name, int(value)) if m.name == base.producer else m for m in base.miners]
        return replace(base, miners=miners)
    if param == 'far_delay':
        return replace(base, topology=base.topology.shifted(int(value)))
    if param == 'difficulty':
        return replace(base, target=Target.from_difficulty(value))
    raise ValueError(f"cannot sweep {param!r}, choose one of {sorted(SWEEPS)}")

def run_simulation(param, value, base, seed):
    config = replace(configure(base, param, value), seed=seed, progress_interval=None)
    result = Simulator(config).run()
    frame = result.to_frame().reset_index()
    frame.insert(0, 'seed', seed)
    frame.insert(0, param, value)
    return frame

def sweep_parameter(param, values, base, runs=1, max_workers=None):
    """
    Runs every (value, seed) pair in its own process. Each run owns its
    simulator, so nothing is shared between them.
    """
    futures = []
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        for value in values:
            for run in range(runs):
                futures.append(executor.submit(run_simulation, param, value, base, base.seed + run))

        frames = []
        for future in as_completed(futures):
            frames.append(future.result())

    return pd.concat(frames).sort_values([param, 'seed', 'miner']).reset_index(drop=True)

def summarize(frame, param):
    # mean over seeds, one row per (value, miner)
    return (frame.groupby([param, 'miner'])[['accepted', 'stale', 'stale_rate', 'revenue_change']]
            .mean()
            .reset_index())

def plot_metric_vs_param(summary, param, metric, filename, out_dir="plots"):
    plt.figure(figsize=(10, 6))
    for miner, rows in summary.groupby('miner'):
        plt.plot(rows[param], rows[metric], marker='o', label=miner)

    xlabel = LABELS.get(param, param)
    plt.xlabel(xlabel)
    plt.ylabel(metric.replace('_', ' ').title())
    plt.title(f"{metric.replace('_', ' ').title()} vs {xlabel}")
    plt.grid(True, linestyle='--', alpha=0.5)
    plt.legend()
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, filename)
    plt.savefig(path)
    plt.close()
    return path

def run_sweep(param, base, values=None, runs=3, out_dir="plots"):
    start = time()
    values = SWEEPS[param] if values is None else values
    frame = sweep_parameter(param, values, base, runs=runs)
    summary = summarize(frame, param)
    print(summary.to_string(index=False, float_format=lambda x: f"{x:.4f}"))
    plot_metric_vs_param(summary, param, 'stale_rate', f"{param}_vs_stale_rate.png", out_dir)
    plot_metric_vs_param(summary, param, 'revenue_change', f"{param}_vs_revenue_change.png", out_dir)
    print(f"Completed sweep in : {((time() - start)/60):.2f} minutes")
    return summary

# ------------------------------
# Visualizations
# ------------------------------

class BlocksizeAnalyzer:
    def __init__(self, result, out_dir="plots"):
        self.result = result
        self.frame = result.to_frame().reset_index()
        self.out_dir = out_dir

    def _save(self, filename):
        os.makedirs(self.out_dir, exist_ok=True)
        path = os.path.join(self.out_dir, filename)
        plt.tight_layout()
        plt.savefig(path)
        plt.close()
        return path

    def plot_stale_rates(self):
        plt.figure(figsize=(10, 6))
        sns.barplot(x='miner', y='stale_rate', data=self.frame, hue='miner', palette="Set2", legend=False)
        plt.axhline(self.result.total_stale_rate, color='black', linestyle='--', label='Network')
        plt.title("Stale Rate per Miner")
        plt.xlabel("Miner")
        plt.ylabel("Stale Blocks / Settled Blocks")
        plt.legend()
        return self._save("stale_rate_per_miner.png")

    def plot_revenue_change(self):
        plt.figure(figsize=(10, 6))
        changes = self.frame['revenue_change'] * 100
        colors = np.where(changes >= 0, 'green', 'red')
        plt.bar(self.frame['miner'], changes, color=colors)
        plt.axhline(0, color='black', linewidth=0.8)
        plt.title("Revenue Change Against Fair Share")
        plt.xlabel("Miner")
        plt.ylabel("Change (%)")
        plt.grid(True, axis='y', linestyle='--', alpha=0.5)
        return self._save("revenue_change_per_miner.png")

    def run_all(self):
        print("Plotting stale rates...")
        paths = [self.plot_stale_rates()]
        print("Plotting revenue change...")
        paths.append(self.plot_revenue_change())
        print("Analysis complete.")
        return paths

if __name__ == "__main__":
    run_sweep('far_delay', default_config(ticks=600 * 5000))
