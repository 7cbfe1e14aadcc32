import argparse
import os

from yacs.config import CfgNode as CN

cfg = CN()

abs_mica_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
cfg.mica_dir = abs_mica_dir
cfg.device = 'cuda'
cfg.device_id = '0'
cfg.output_dir = ''


cfg.dataset = CN()
cfg.dataset.training_data = ['FRGC']
cfg.dataset.eval_data = ['FACEWAREHOUSE']
cfg.dataset.batch_size = 2
cfg.dataset.K = 4
cfg.dataset.n_train = 100000
cfg.dataset.num_workers = 4
cfg.dataset.root = 'dataset'
cfg.dataset.image_paths_folder = 'image_paths'
cfg.dataset.image_folder = 'images'
cfg.dataset.flame_folder = 'FLAME_parameters'
cfg.dataset.image_size = 224
cfg.dataset.max_eval_K = 200
cfg.dataset.n_shape = 300

# face detector (insightface model pack)
cfg.dataset.det_model = 'antelopev2'
cfg.dataset.det_size = 224
cfg.dataset.det_providers = ['CUDAExecutionProvider']


def get_cfg_defaults():
    return cfg.clone()


def update_cfg(cfg, cfg_file):
    cfg.merge_from_file(cfg_file)
    return cfg.clone()


def parse_args(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument('--cfg', type=str, help='cfg file path', required=True)
    parser.add_argument('--test_dataset', type=str, help='Test dataset type', default='')
    parser.add_argument('--checkpoint', type=str, help='Checkpoint to load', default='')

    args = parser.parse_args(argv)

    cfg = get_cfg_defaults()
    if args.cfg is not None:
        cfg_file = args.cfg
        cfg = update_cfg(cfg, args.cfg)
        cfg.cfg_file = cfg_file

    return cfg, args
