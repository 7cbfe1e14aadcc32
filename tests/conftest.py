from pathlib import Path

import cv2
import numpy as np
import pytest
from loguru import logger

from mica.configs.config import get_cfg_defaults

# arcface 5-point template for a 112 crop, scaled to 224
ARCFACE_KPS_224 = np.array([
    [38.2946, 51.6963],
    [73.5318, 51.5014],
    [56.0252, 71.7366],
    [41.5493, 92.3655],
    [70.7299, 92.2041],
], dtype=np.float32) * 2


class FakeDetector:
    def __init__(self, bboxes=None, kpss=None):
        if bboxes is None:
            bboxes = np.array([[20, 20, 120, 140, 0.99]], dtype=np.float32)
        self.bboxes = np.asarray(bboxes, dtype=np.float32).reshape(-1, 5)
        self.kpss = kpss
        self.calls = 0

    def detect(self, img):
        self.calls += 1
        return self.bboxes.copy(), self.kpss


class FakeFAN:
    def __init__(self, landmarks=None, n_points=68):
        if landmarks is None:
            landmarks = [np.full((n_points, 2), 7.0, dtype=np.float32)]
        self.landmarks = landmarks
        self.calls = 0
        self.images = []

    def get_landmarks(self, img):
        self.calls += 1
        self.images.append(img)
        return self.landmarks


def write_dataset(root, name, actors, n_betas=310, n_pose=15, image_shape=(200, 180)):
    '''
    actors: dict actor -> number of images. Writes the cached file list, images and params.
    '''
    root = Path(root)
    face_dict = {}
    rng = np.random.default_rng(0)
    for actor, count in actors.items():
        images = []
        for i in range(count):
            relative = f'{actor}/{actor}_{i:03d}.png'
            path = Path(root, name, 'images', f'{actor}_{i:03d}.png')
            path.parent.mkdir(parents=True, exist_ok=True)
            img = rng.integers(0, 256, size=(*image_shape, 3), dtype=np.uint8)
            cv2.imwrite(str(path), img)
            images.append(relative)

        params_path = f'{actor}.npz'
        flame_dir = Path(root, name, 'FLAME_parameters')
        flame_dir.mkdir(parents=True, exist_ok=True)
        np.savez(flame_dir / params_path, pose=np.arange(n_pose, dtype=np.float32), betas=np.arange(n_betas, dtype=np.float32))
        face_dict[actor] = (images, params_path)

    image_paths = Path(root, 'image_paths')
    image_paths.mkdir(parents=True, exist_ok=True)
    np.save(image_paths / f'{name.upper()}.npy', face_dict, allow_pickle=True)
    return face_dict


@pytest.fixture
def config(tmp_path):
    cfg = get_cfg_defaults()
    cfg.dataset.root = str(tmp_path)
    cfg.dataset.K = 2
    return cfg.dataset


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def fan():
    return FakeFAN()


@pytest.fixture
def log_records():
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level='DEBUG')
    yield records
    logger.remove(handler_id)
