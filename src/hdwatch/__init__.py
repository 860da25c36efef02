"""
hdwatch: HD wallet master-key signer and Electrum synchronization engine.
"""

__version__ = "0.1.0"
