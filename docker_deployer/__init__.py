"""
    Deploys a dockerized git repository to a server over ssh and puts nginx in front of it.
"""

__version__ = "1.0.0"
