"""microdeploy - single-instance lifecycle for a VM deployer

Brings one deployed job instance to a ready state, starts its jobs through
the in-VM agent, and tears it down, recording every step on a progress
stage.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
