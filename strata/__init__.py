"""
strata - Layered package manager

Packages are shipped as container-image layer tarballs; strata resolves
their dependencies, orders them and installs them into a root filesystem:
- Deterministic and Q-learning dependency solvers
- Parallel artifact fetching with config file protection
- SQLite database of installed packages
"""

__version__ = "0.1.0"
