"""
Transform — animated-image guard and static image optimizer.
"""

from .optimizer import OptimizedImage, OptimizeOptions, optimize_image
from .selector import decide

__all__ = [
    "OptimizeOptions",
    "OptimizedImage",
    "decide",
    "optimize_image",
]
