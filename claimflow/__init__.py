"""
claimflow - claim lifecycle state machine and workflow orchestration.
"""
__version__ = "1.0.0"
