"""
Nightlife Order Analytics
Order-analytics rollup aggregator
"""

__version__ = "1.0.0"
