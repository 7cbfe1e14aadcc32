import os
import pickle
from abc import ABC
from functools import reduce
from pathlib import Path

import cv2
import numpy as np
import torch
from loguru import logger
from torch.utils.data import Dataset

from mica.datasets.detectors import align_crop, build_models
from mica.utils.util import get_center


class BaseDataset(Dataset, ABC):
    '''
    One item per actor: K face crops of the actor aligned to image_size x image_size,
    their landmarks and the actor's FLAME parameters repeated K times.

    The detector and the landmark model are shared by reference. Pass them in to reuse
    models across datasets, otherwise they are loaded once in initialize().
    '''

    def __init__(self, name, config, device, isEval, detector=None, fan=None, rng=None):
        self.K = config.K
        self.isEval = isEval
        self.device = device
        self.actors = []
        self.face_dict = {}
        self.name = name
        self.min_max_K = 0
        self.max_K = 0
        self.n_train = getattr(config, 'n_train', np.inf)
        self.dataset_root = config.root
        self.total_images = 0
        self.image_paths_folder = config.image_paths_folder
        self.image_folder = config.image_folder
        self.flame_folder = config.flame_folder
        self.image_size = config.image_size
        self.max_eval_K = config.max_eval_K
        self.n_shape = config.n_shape
        self.config = config
        self.detector = detector
        self.fan = fan
        self.rng = np.random if rng is None else rng
        self.initialize()

    def initialize(self):
        logger.info(f'[{self.name}] Initialization')
        image_list_file = os.path.join(self.dataset_root, self.image_paths_folder, f'{str.upper(self.name)}.npy')
        logger.info(f'[{self.name}] Load cached file list: ' + image_list_file)
        self.face_dict = self.load_face_dict(image_list_file)
        self.actors = list(self.face_dict.keys())
        if self.n_train < len(self.actors):
            self.actors = self.actors[:int(self.n_train)]
            self.face_dict = {actor: self.face_dict[actor] for actor in self.actors}
        logger.info(f'[Dataset {self.name}] Total {len(self.actors)} actors loaded!')
        self.set_smallest_k()

        self.detector, self.fan = build_models(self.config, self.device, detector=self.detector, fan=self.fan)

    def load_face_dict(self, image_list_file):
        if not os.path.exists(image_list_file):
            logger.error(f'[{self.name}] Cached file list not found: {image_list_file}')
            raise FileNotFoundError(f'Cached file list not found: {image_list_file}')

        try:
            face_dict = np.load(image_list_file, allow_pickle=True).item()
        except (ValueError, EOFError, pickle.UnpicklingError) as e:
            logger.error(f'[{self.name}] Cannot read cached file list {image_list_file}: {e}')
            raise ValueError(f'Malformed cached file list: {image_list_file}') from e

        if not isinstance(face_dict, dict) or len(face_dict) == 0:
            self._invalid(f'Cached file list {image_list_file} does not contain any actor')

        for actor, entry in face_dict.items():
            if not isinstance(entry, (tuple, list)) or len(entry) != 2:
                self._invalid(f'Actor {actor} must map to (images, params path), got {entry!r}')
            images, params_path = entry
            if not isinstance(images, (tuple, list)):
                self._invalid(f'Actor {actor} must have a list of images, got {images!r}')
            if len(images) == 0:
                self._invalid(f'Actor {actor} has no images')
            if not isinstance(params_path, str):
                self._invalid(f'Actor {actor} must have exactly one params path, got {params_path!r}')

        return face_dict

    def _invalid(self, message):
        logger.error(f'[{self.name}] {message}')
        raise ValueError(message)

    def set_smallest_k(self):
        self.min_max_K = np.inf
        self.max_K = -np.inf
        for key in self.face_dict.keys():
            length = len(self.face_dict[key][0])
            if length < self.min_max_K:
                self.min_max_K = length
            if length > self.max_K:
                self.max_K = length

        self.total_images = reduce(lambda k, l: l + k, map(lambda e: len(self.face_dict[e][0]), self.actors), 0)
        logger.info(f'Dataset {self.name} with min K = {self.min_max_K} max K = {self.max_K} length = {len(self.face_dict)} total images = {self.total_images}')
        return self.min_max_K

    def __len__(self):
        return len(self.actors)

    def image_path(self, path):
        # cached paths start with the actor folder, images are stored without it
        return Path(self.dataset_root, self.name, self.image_folder, *Path(path).parts[1:])

    def select_indices(self, count, K=None, isEval=None):
        K = self.K if K is None else K
        isEval = self.isEval if isEval is None else isEval

        if isEval:
            K = max(0, min(self.max_eval_K, self.min_max_K))
            return K, np.array(range(count)[:K])

        if K > count:
            logger.error(f'[{self.name}] Cannot sample K = {K} images out of {count}')
            raise ValueError(f'K = {K} is larger than the number of available images ({count})')

        return K, np.array(self.rng.choice(count, size=K, replace=False))

    def load_params(self, params_path):
        with np.load(os.path.join(self.dataset_root, self.name, self.flame_folder, params_path), allow_pickle=True) as params:
            pose = torch.tensor(params['pose']).float()
            betas = torch.tensor(params['betas']).float()
        return pose, betas

    def build_shape_block(self, betas, pose, K):
        if betas.shape[0] < self.n_shape:
            logger.error(f'[{self.name}] Expected at least {self.n_shape} betas, got {betas.shape[0]}')
            raise ValueError(f'Expected at least {self.n_shape} betas, got {betas.shape[0]}')
        if pose.shape[0] < 9:
            logger.error(f'[{self.name}] Expected at least 9 pose values, got {pose.shape[0]}')
            raise ValueError(f'Expected at least 9 pose values, got {pose.shape[0]}')

        return {
            'shape_params': torch.cat(K * [betas[:self.n_shape][None]], dim=0),
            'expression_params': torch.cat(K * [betas[self.n_shape:][None]], dim=0),
            'pose_params': torch.cat(K * [torch.cat([pose[:3], pose[6:9]])[None]], dim=0),
        }

    def process_image(self, image_path):
        img = cv2.imread(str(image_path))
        if img is None:
            logger.error(f'[{self.name}] Cannot read image {image_path}')
            raise IOError(f'Cannot read image {image_path}')

        bboxes, kpss = self.detector.detect(img)
        if bboxes.shape[0] == 0:
            logger.warning(f'[{self.name}] No face detected in {image_path}')
            return None

        i = get_center(bboxes, img)
        bbox = bboxes[i, 0:4]
        kps = None
        if kpss is not None:
            kps = kpss[i]

        arcface = align_crop(img, kps, bbox=bbox, image_size=self.image_size)
        arcface = arcface / 255.0

        # FAN runs on the full image, its face is not matched against bbox
        landmark = self.fan.get_landmarks(img)
        if landmark is None or len(landmark) == 0:
            logger.warning(f'[{self.name}] No landmarks found in {image_path}')
            return None

        return arcface, landmark[0]

    def build_sample(self, actor, arcface_list, landmark_list, flame):
        if len(arcface_list) == 0:
            images_array = torch.zeros((0, self.image_size, self.image_size, 3))
        else:
            images_array = torch.from_numpy(np.array(arcface_list)).float()
        landmarks = torch.from_numpy(np.array(landmark_list)).float()

        return {
            'images': images_array,
            'imagename': actor,
            'dataset': self.name,
            'flame': flame,
            'landmark': landmarks
        }

    def __getitem__(self, index):
        actor = self.actors[index]
        images, params_path = self.face_dict[actor]
        images = [self.image_path(path) for path in images]

        K, sample_list = self.select_indices(len(images))

        pose, betas = self.load_params(params_path)
        flame = self.build_shape_block(betas, pose, K)

        faces = [self.process_image(images[i]) for i in sample_list]
        faces = [face for face in faces if face is not None]

        arcface_list = [arcface for arcface, _ in faces]
        landmark_list = [landmark for _, landmark in faces]

        return self.build_sample(actor, arcface_list, landmark_list, flame)
