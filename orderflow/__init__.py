"""
Orderflow

Marketplace order lifecycle and settlement orchestrator: seller commitment,
payment splits, courier automation, expiry sweeps and refunds.
"""

__version__ = "0.1.0"
__author__ = "Orderflow Team"
