"""
Core modules for cc-status.

This package contains the usage accounting: record parsing, rolling
blocks, quota estimation, pricing, and the derived status metrics.
"""
