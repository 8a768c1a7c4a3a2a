"""
Utility Functions and Logging Configuration
============================================

This module provides helper functions for:
- Logging setup and management
- Configuration file loading and validation
- Memory monitoring
- Random seed setting for reproducibility

Author: Alfred3005
"""

import logging
import os
import sys
import gc
import copy
import yaml
import psutil
import numpy as np
import random
from pathlib import Path
from typing import Dict, Any, Optional, Union


LOGGER_NAME = "mnn_integration"

MERGE_ORDER_POLICIES = ("input", "largest_first", "auto")
KNN_METHODS = ("exact", "approximate")

DEFAULT_MNN_PARAMS: Dict[str, Any] = {
    'k': 20,
    'merge_order': 'input',
    'k_smooth': None,
    'sigma': None,
    'knn_method': 'exact',
    'n_jobs': None,
    'n_trees': 50,
    'orthogonalize': False,
    'min_batch_skip': 0.0,
    'max_iter': 20,
    'tol': 1e-3,
    'compute_umap': True,
}


class ConfigurationError(ValueError):
    """Invalid parameters or inputs, detected before any merge is attempted."""


def setup_logging(
    log_file: Optional[str] = None,
    log_level: str = "INFO",
    console_output: bool = True
) -> logging.Logger:
    """
    Configure logging for the pipeline.

    Parameters
    ----------
    log_file : str, optional
        Path to log file. If None, logs only to console.
    log_level : str, default "INFO"
        Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    console_output : bool, default True
        Whether to output logs to console

    Returns
    -------
    logging.Logger
        Configured logger instance

    Examples
    --------
    >>> logger = setup_logging(log_file="results/reports/mnn.log")
    >>> logger.info("Integration started")
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers = []

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file is not None:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    config_path : str or Path
        Path to YAML configuration file

    Returns
    -------
    dict
        Configuration dictionary

    Examples
    --------
    >>> config = load_config("config/mnn_params.yaml")
    >>> print(config['integration']['mnn']['k'])
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    return config or {}


def get_mnn_params(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Resolve MNN parameters from a configuration dictionary.

    Values under ``config['integration']['mnn']`` override
    ``DEFAULT_MNN_PARAMS``; unknown keys are rejected.

    Parameters
    ----------
    config : dict, optional
        Configuration as returned by :func:`load_config`

    Returns
    -------
    dict
        Complete parameter dictionary

    Raises
    ------
    ConfigurationError
        If a key is unknown or a value is out of range
    """
    params = copy.deepcopy(DEFAULT_MNN_PARAMS)

    if config:
        user_params = (config.get('integration') or {}).get('mnn') or {}
        unknown = set(user_params) - set(DEFAULT_MNN_PARAMS)
        if unknown:
            raise ConfigurationError(
                f"Unknown MNN parameters: {', '.join(sorted(unknown))}"
            )
        params.update(user_params)

    if not isinstance(params['k'], (int, np.integer)) or params['k'] < 1:
        raise ConfigurationError(f"k must be a positive integer, got {params['k']!r}")

    order = params['merge_order']
    if isinstance(order, str) and order not in MERGE_ORDER_POLICIES:
        raise ConfigurationError(
            f"Unknown merge_order '{order}'. "
            f"Expected one of {MERGE_ORDER_POLICIES} or a list of batch labels"
        )

    if params['knn_method'] not in KNN_METHODS:
        raise ConfigurationError(
            f"Unknown knn_method '{params['knn_method']}'. Expected one of {KNN_METHODS}"
        )

    if params['sigma'] is not None and params['sigma'] <= 0:
        raise ConfigurationError(f"sigma must be positive, got {params['sigma']}")

    if params['k_smooth'] is not None and params['k_smooth'] < 1:
        raise ConfigurationError(f"k_smooth must be positive, got {params['k_smooth']}")

    if params['min_batch_skip'] < 0:
        raise ConfigurationError("min_batch_skip must be non-negative")

    max_iter = params['max_iter']
    if isinstance(max_iter, bool) or not isinstance(max_iter, (int, np.integer)) or max_iter < 0:
        raise ConfigurationError(f"max_iter must be a non-negative integer, got {max_iter!r}")

    if params['tol'] <= 0:
        raise ConfigurationError(f"tol must be positive, got {params['tol']}")

    return params


def set_random_seeds(seed: int = 42) -> None:
    """
    Set random seeds for reproducibility (Python ``random`` and NumPy).

    Parameters
    ----------
    seed : int, default 42
        Random seed value
    """
    random.seed(seed)
    np.random.seed(seed)

    os.environ['PYTHONHASHSEED'] = str(seed)


def get_memory_usage() -> Dict[str, float]:
    """
    Get current memory usage statistics.

    Returns
    -------
    dict
        Dictionary with memory statistics:
        - ram_used_gb: RAM used in GB
        - ram_available_gb: Available RAM in GB
        - ram_percent: RAM usage percentage
        - process_rss_gb: resident memory of this process in GB
    """
    memory = psutil.virtual_memory()
    process = psutil.Process(os.getpid())

    return {
        'ram_used_gb': memory.used / (1024 ** 3),
        'ram_available_gb': memory.available / (1024 ** 3),
        'ram_percent': memory.percent,
        'process_rss_gb': process.memory_info().rss / (1024 ** 3),
    }


def log_memory_usage(logger: logging.Logger) -> None:
    """
    Log current memory usage.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance
    """
    mem = get_memory_usage()

    logger.info(
        f"Memory usage - RAM: {mem['ram_used_gb']:.2f} GB "
        f"({mem['ram_percent']:.1f}%), "
        f"Available: {mem['ram_available_gb']:.2f} GB, "
        f"Process: {mem['process_rss_gb']:.2f} GB"
    )


def cleanup_memory(logger: Optional[logging.Logger] = None) -> None:
    """Run garbage collection after large neighbour searches."""
    gc.collect()

    if logger is not None:
        logger.debug("Memory cleanup performed (gc)")


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Create directory if it doesn't exist.

    Parameters
    ----------
    path : str or Path
        Directory path

    Returns
    -------
    Path
        Path object of the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
