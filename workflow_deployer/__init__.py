"""
Workflow Deployer

Resolves dependencies between workflow definitions and deploys them to an
external workflow engine in two phases: materialize inactive, then activate
in dependency order.
"""

__version__ = "1.0.0"
