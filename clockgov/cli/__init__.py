"""
clockgov CLI

Terminal front end: run the governor, inspect GPUs, read the audit log.
"""

from .main import cli
