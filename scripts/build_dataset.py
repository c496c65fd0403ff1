#!/usr/bin/env python
"""Builds a dataset given a hydra config file and, optionally, generates the samples of a task over it."""

from pathlib import Path

import hydra
from loguru import logger
from omegaconf import DictConfig, OmegaConf

from PatientStream.data.dataset import Dataset
from PatientStream.logger import hydra_loguru_init


def build_dataset(cfg: dict) -> Dataset:
    """Builds a `Dataset` from a preset name or an explicit config path, as specified in `cfg`."""
    preset = cfg.get("preset")
    config_path = cfg.get("config_path")

    if (preset is None) == (config_path is None):
        raise ValueError(f"Exactly one of preset and config_path must be specified! Got {preset}, {config_path}")

    kwargs = {
        "root": Path(cfg["root"]),
        "dataset_name": cfg.get("dataset_name"),
        "dev": cfg.get("dev", False),
        "dev_limit": cfg.get("dev_limit", 1000),
    }

    if preset is not None:
        return Dataset.from_preset(preset, tables=cfg.get("tables") or [], **kwargs)
    return Dataset(tables=cfg["tables"], config_path=Path(config_path), **kwargs)


@hydra.main(version_base=None, config_path="../configs", config_name="build_dataset")
def main(cfg: DictConfig):
    log_fp = hydra_loguru_init("build_dataset.log")
    logger.info(f"Logging to {log_fp}")

    task = hydra.utils.instantiate(cfg.task) if cfg.get("task") is not None else None
    cfg = OmegaConf.to_container(cfg, resolve=True)

    dataset = build_dataset(cfg)
    dataset.stats()

    if task is None and dataset.default_task_target is None:
        logger.info("No task configured; stopping after building the dataset.")
        return

    sample_dataset = dataset.set_task(
        task,
        num_workers=cfg["num_workers"],
        chunk_size=cfg["chunk_size"],
        cache_dir=cfg.get("cache_dir"),
    )
    logger.info(f"Built {sample_dataset}")


if __name__ == "__main__":
    main()
