"""Connectivity monitoring daemon and outage analyzer."""

__version__ = "0.1.0"
