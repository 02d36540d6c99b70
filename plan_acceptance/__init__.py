"""
Plan acceptance directory: crowdsourced verifications of whether healthcare
providers accept insurance plans, reduced to one scored answer per pair.
"""

__version__ = "1.0.0"
