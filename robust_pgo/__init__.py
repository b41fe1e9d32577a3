"""robust_pgo: outlier-robust pose-graph back-end on top of GTSAM.

This package provides:
- Uncertain poses (covariance or travelled distance) with exact
  first-order propagation through compose / inverse / between
- Transform and trajectory bookkeeping keyed by gtsam Symbols
- Pairwise Consistency Maximization (PCM) for loop-closure outlier rejection
- Batch (Levenberg-Marquardt) and incremental (iSAM2) solvers
- An orchestrator that keeps the accepted graph and the current estimate
- A CLI entry point (see main.py)

Design intent:
Keep outlier rejection and solving behind narrow interfaces so either can
be swapped (e.g. a test double solver) without touching the bookkeeping.
"""
__all__ = ["lie", "geometry", "models", "graph", "trajectory", "pcm", "solver",
           "orchestrator", "robust"]
__version__ = "0.1.0"
