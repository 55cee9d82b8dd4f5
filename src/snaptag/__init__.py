"""SnapTag: asynchronous single-image classification."""
