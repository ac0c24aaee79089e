"""
Deployment supervisor - watchdog, promotion and rollback for one application.

Runs the managed application process, rolls the live tree back from the
latest backup when a deployment crash-loops, and promotes a staging tree
into live (or reverts staging to live) with versioned backups.
"""

__version__ = "0.1.0"
