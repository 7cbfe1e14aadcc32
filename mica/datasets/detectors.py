import cv2
import numpy as np
from insightface.app import FaceAnalysis
from insightface.utils import face_align
from loguru import logger


class FaceDetector(object):
    def __init__(self, name='antelopev2', providers=None, ctx_id=0, det_size=224):
        if providers is None:
            providers = ['CUDAExecutionProvider']
        self.app = FaceAnalysis(name=name, providers=providers)
        self.app.prepare(ctx_id=ctx_id, det_size=(det_size, det_size))

    def detect(self, img):
        return self.app.det_model.detect(img, max_num=0, metric='default')


class FAN(object):
    def __init__(self, device='cuda'):
        import face_alignment
        self.model = face_alignment.FaceAlignment(face_alignment.LandmarksType.TWO_D, flip_input=False, device=device)

    def get_landmarks(self, img):
        return self.model.get_landmarks(img)


def build_models(config, device, detector=None, fan=None):
    '''
    Detector and landmark model shared by every dataset built from the same config.
    Only the models not passed in are loaded.
    '''
    if detector is None:
        logger.info(f'Loading face detector {config.det_model} on {device}')
        ctx_id = -1 if str(device) == 'cpu' else 0
        detector = FaceDetector(name=config.det_model, providers=list(config.det_providers), ctx_id=ctx_id, det_size=config.det_size)
    if fan is None:
        logger.info(f'Loading FAN landmarks on {device}')
        fan = FAN(device=str(device))
    return detector, fan


def align_crop(img, kps, bbox=None, image_size=224):
    # 5-point arcface alignment, or a plain box crop when the detector gave no keypoints
    if kps is not None:
        return face_align.norm_crop(img, landmark=kps, image_size=image_size)

    if bbox is None:
        raise ValueError('align_crop needs either keypoints or a bounding box')

    h, w = img.shape[0:2]
    x1, y1, x2, y2 = np.round(np.asarray(bbox[0:4], dtype=np.float32)).astype(int)
    x1, x2 = max(0, x1), min(w, x2)
    y1, y2 = max(0, y1), min(h, y2)
    crop = img[y1:y2, x1:x2]
    if crop.size == 0:
        raise ValueError(f'Empty crop for bounding box {list(bbox[0:4])} in image of shape {img.shape}')

    return cv2.resize(crop, (image_size, image_size))
