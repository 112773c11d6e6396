import cv2
import numpy as np
import pytest


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def frame_folder(tmp_path):
    """Write frames as lossless PNGs named frame1.png, frame2.png, ..."""
    def write(frames, name="images"):
        folder = tmp_path / name
        folder.mkdir()
        for i, frame in enumerate(frames, start=1):
            assert cv2.imwrite(str(folder / f"frame{i}.png"), frame)
        return folder
    return write
