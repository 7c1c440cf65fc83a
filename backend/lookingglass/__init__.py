"""
Looking glass backend: network probes, live MTR and throughput tests.
"""

__version__ = "1.0.0"
