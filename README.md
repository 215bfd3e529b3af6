# slammap

This package holds the bookkeeping for the back end of a feature-based visual SLAM system. It is built on numpy. Poses are 4×4 camera-from-world arrays and positions are 3-vectors.

## Modules

- `slammap.worldmap.Map` stores the keyframes and map points. It also keeps the reference map points, the highest keyframe id and a counter of big changes (`inform_new_big_change`, `last_big_change`). Two locks are public: `mutex_map_update` and `mutex_point_creation`.
- `slammap.mappoint.MapPoint` is a 3D landmark. It records which keyframe and feature index observe it, with stereo observations counting twice. Once two or fewer observations remain, it marks itself bad. It can hand its observations over to another point (`replace`). It keeps a mean viewing normal and scale-invariance distances (`update_normal_and_depth`, `min_distance_invariance`, `max_distance_invariance`, `predict_scale`). Among its observed descriptors it keeps the one with the least median Hamming distance to the others (`compute_distinctive_descriptors`). `MapPoint.from_frame` creates a point from a plain frame. `descriptor_distance(a, b)` returns the Hamming distance between two byte descriptors.
- `slammap.covisibility.CovisibilityNode` is the weighted covisibility graph. It lists connections by decreasing weight (`covisible_keyframes`, `best_covisibility_keyframes`, `covisibles_by_weight`). It also holds the spanning tree (`parent`, `children`, `change_parent`) and loop edges.
- `slammap.keyframe.KeyFrame` is a `CovisibilityNode` built from a frame-like object. The `KeyFrame` docstring lists the attributes that object needs. A keyframe holds:
  - the pose and its inverse, the camera centre and the stereo centre;
  - the map-point matches per feature index;
  - a feature grid for `features_in_area`;
  - `unproject_stereo`, `is_in_image` and `compute_scene_median_depth`.

  `update_connections` rebuilds graph links from shared map points. It links keyframes that share at least 15 points; when none reaches that, it links only the strongest. `set_bad_flag` removes the keyframe from the graph, the spanning tree, the map and the database, unless erasure has been forbidden (`set_not_erase`, `set_erase`, loop edges).
- `slammap.keyframe_database.KeyFrameDatabase` is an inverted index from vocabulary word to keyframes. `detect_loop_candidates` and `detect_relocalization_candidates` score keyframes that share enough words and add up scores over covisible neighbours. They keep candidates above 75 % of the best accumulated score. The vocabulary must support `len()` and `score(bow_a, bow_b)`. Bag-of-words vectors are mappings from word id to weight.
- `slammap.loop_detection` has `min_covisible_score` and `check_consistency`. `min_covisible_score` is the lowest similarity of a keyframe to its covisible keyframes. `check_consistency` tracks the `ConsistentGroup`s of candidates across consecutive queries.
- `slammap.local_mapping.LocalMapping` provides:
  - the new-keyframe queue and `process_new_keyframe`;
  - `map_point_culling` and `keyframe_culling`;
  - the stop, release, reset and finish handshakes between threads.

  The module also provides `compute_f12`, the fundamental matrix between two keyframes, and `skew_symmetric`.
- `slammap.loop_closing.LoopClosing` queues keyframes (never the one with id 0) and runs `detect_loop`. A loop is reported once a candidate group has stayed consistent for `covisibility_consistency_threshold` (3) queries. `LoopClosing` also has reset and finish handshakes.
- `slammap.camera_view` holds geometry for drawing, with no drawing code:
  - `frustum_segments(size)` gives the line segments of a camera pyramid.
  - `graph_edges(keyframes, min_weight=100)` gives segments between camera centres for strong covisibility links, spanning-tree links and loop edges.
  - `CameraView.opengl_camera_matrix()` returns the camera-to-world transform as 16 column-major values, or the identity when no pose is set.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np

from slammap.worldmap import Map
from slammap.local_mapping import skew_symmetric

world = Map()
world.inform_new_big_change()
assert world.last_big_change() == 1
assert world.keyframes_in_map() == 0

v, w = np.array([1.0, 2.0, 3.0]), np.array([4.0, 5.0, 6.0])
assert np.allclose(skew_symmetric(v) @ w, np.cross(v, w))
```

## What it does not do

The package is a library with no command, thread loop, window or storage.

- It does not extract features, track frames or build a bag-of-words vocabulary. Frames, keypoints, descriptors and the vocabulary come from the caller.
- `LocalMapping` does not triangulate new map points, fuse points with neighbouring keyframes or run bundle adjustment.
- `LoopClosing` stops at detecting a consistent loop. It does not compute the similarity transform, correct the loop, optimise the pose graph or run global bundle adjustment.
- `camera_view` produces geometry only; drawing it is left to the caller.