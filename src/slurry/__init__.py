# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Slurry - observable, versioned tracking of SLURM batch jobs."""

__version__ = "0.1.0"
