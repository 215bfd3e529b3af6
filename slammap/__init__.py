"""Map, map points, keyframes, covisibility graph, keyframe database, local mapping and loop detection for feature-based visual SLAM."""

__version__ = "0.1.0"