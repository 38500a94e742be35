"""
bipedlab: a 2D biped walker trained with GRPO in a background worker.
"""

__version__ = "0.1.0"
