from pathlib import Path

from hydra.core.hydra_config import HydraConfig
from loguru import logger


def hydra_loguru_init(log_name: str = "main.log") -> Path:
    """Adds a loguru file sink in the hydra run directory and returns its path. Must be called from a hydra main!"""
    log_fp = Path(HydraConfig.get().runtime.output_dir) / log_name
    logger.add(log_fp)
    return log_fp
