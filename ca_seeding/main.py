#!/usr/bin/env python3
r"""
Cellular-automaton seeding runner (headless-safe).

Loads an event directory (clusters, vertex, layered geometry) or simulates
one, runs a single seeding pass and writes the seed tracks.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   ca-seeding -e events/evt_0001 -c config.json -o tracks.csv
   ca-seeding --simulate 50 --noise 200 --seed 1 --plot

In simulation mode the layers ``min_layer .. start_layer`` of the
configuration are placed at evenly spaced radii between ``--r-min`` and
``--r-max`` and the seeding efficiency against truth is reported.
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from ca_seeding.config import SeedingConfig, load_config
from ca_seeding.data import load_event, write_event
from ca_seeding.errors import SeedingError
from ca_seeding.seeding import CASeeder, SeedingContext
from ca_seeding.simulate import evenly_spaced_geometry, make_event
from ca_seeding.sink import TrackCollection


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
    """
    p = argparse.ArgumentParser(description="Run cellular-automaton track seeding on one event.")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("-e", "--event", type=str, default=None,
                     help="Event directory with clusters.csv, vertex.csv and geometry_*.csv.")
    src.add_argument("--simulate", type=int, default=None, metavar="N_TRACKS",
                     help="Simulate an event with this many helices instead of loading one.")
    p.add_argument("-c", "--config", type=str, default=None,
                   help="JSON config with seeding options (default: built-in defaults).")
    p.add_argument("-o", "--output", type=str, default=None,
                   help="Write one row per track to this CSV.")
    p.add_argument("--hits-output", type=str, default=None,
                   help="Write one row per (track, hit) to this CSV.")
    p.add_argument("--noise", type=int, default=0,
                   help="Simulation: random hits per layer (default: 0).")
    p.add_argument("--r-min", type=float, default=20.0,
                   help="Simulation: radius of the innermost layer (default: 20).")
    p.add_argument("--r-max", type=float, default=90.0,
                   help="Simulation: radius of the start layer (default: 90).")
    p.add_argument("--seed", type=int, default=None,
                   help="Simulation: random seed.")
    p.add_argument("--save-event", type=str, default=None,
                   help="Simulation: also write the event to this directory.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show cluster/seed plots (default: False).")
    p.add_argument("--plot-out", type=str, default=None,
                   help="Save the seed plot to this file (implies plotting, headless).")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Enforce a **headless-safe** Matplotlib configuration when plots are not shown.

    Must be called **before** importing :mod:`ca_seeding.plotting`.

    Parameters
    ----------
    enable_plots : bool
        If ``False``, set backend to ``'Agg'`` (non-interactive), turn off
        interactive mode, and neutralize ``plt.show()``.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt  # noqa: WPS433
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def seeding_efficiency(tracks: TrackCollection, truth: pd.DataFrame) -> float:
    r"""
    Fraction of truth particles whose two outermost hits form a seed track.

    .. math::

        \varepsilon = \frac{\#\{\text{particles } p : (k^p_{out}, k^p_{out-1})
                       = (k^t_0, k^t_1) \text{ for some track } t\}}{\#\text{particles}}
    """
    if truth.empty:
        return float("nan")
    found = {tuple(t.hit_keys[:2]) for t in tracks}
    n_ok = sum(1 for keys in truth["hit_keys"] if (keys[-1], keys[-2]) in found)
    return n_ok / len(truth)


def main(argv: Optional[List[str]] = None) -> int:
    r"""
    End-to-end pipeline: **load (or simulate) → index → seed → write**.

    Returns
    -------
    int
        ``0`` on success, ``1`` if the event was aborted or inputs were invalid.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot and not args.plot_out)

    try:
        config = load_config(Path(args.config)) if args.config else SeedingConfig()
        truth = None
        if args.simulate is not None:
            config = config.validate()
            geometry = evenly_spaced_geometry(
                first_layer=config.min_layer,
                n_layers=config.start_layer - config.min_layer + 1,
                r_min=args.r_min,
                r_max=args.r_max,
            )
            clusters, vertex, truth = make_event(
                geometry, args.simulate, config=config,
                rng=np.random.default_rng(args.seed), noise_hits_per_layer=args.noise,
            )
            logging.info("Simulated %d tracks (%d clusters)", args.simulate, len(clusters))
            if args.save_event:
                write_event(args.save_event, clusters, geometry, vertex)
                logging.info("Wrote simulated event to %s", args.save_event)
        else:
            clusters, geometry, vertex = load_event(args.event)
    except (SeedingError, ValueError) as e:
        logging.error("%s", e)
        return 1

    tracks = TrackCollection()
    seeder = CASeeder()
    result = seeder.process_event(SeedingContext(config, geometry, clusters, vertex), tracks)
    if not result.ok:
        logging.error("Event aborted: %s", result.message)
        return 1

    logging.info("Seeds: %d | pairs: %d | rejected: %d | duplicates: %d",
                 result.n_tracks, result.n_pairs, result.n_rejected, result.n_duplicates)
    if truth is not None:
        logging.info("Seeding efficiency: %.1f%%", 100.0 * seeding_efficiency(tracks, truth))

    if args.output:
        tracks.to_frame().to_csv(args.output, index=False)
        logging.info("Wrote %d tracks to %s", len(tracks), args.output)
    if args.hits_output:
        tracks.hits_frame().to_csv(args.hits_output, index=False)
        logging.info("Wrote track hits to %s", args.hits_output)

    if args.plot or args.plot_out:
        import ca_seeding.plotting as ca_plot  # noqa: WPS433
        ca_plot.plot_seeds_xy(clusters, tracks, show=args.plot and not args.plot_out, out_path=args.plot_out)
        if args.plot and not args.plot_out:
            ca_plot.plot_index_phi_eta(seeder.index)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
