import numpy as np
from torch.utils.data import ConcatDataset

from mica.datasets.base import BaseDataset
from mica.datasets.detectors import build_models


def _build(config, device, names, isEval, detector=None, fan=None, rng=None):
    detector, fan = build_models(config, device, detector=detector, fan=fan)

    data_list = []
    total_images = 0
    for dataset in names:
        config.n_train = np.inf
        if type(dataset) is list:
            dataset, n_train = dataset
            config.n_train = n_train
        dataset_name = dataset.upper()

        dataset = BaseDataset(name=dataset_name, config=config, device=device, isEval=isEval, detector=detector, fan=fan, rng=rng)

        data_list.append(dataset)
        total_images += dataset.total_images

    return ConcatDataset(data_list), total_images


def build_train(config, device, detector=None, fan=None, rng=None):
    return _build(config, device, config.training_data, False, detector=detector, fan=fan, rng=rng)


def build_val(config, device, detector=None, fan=None, rng=None):
    return _build(config, device, config.eval_data, True, detector=detector, fan=fan, rng=rng)
