import logging
import json
import time
import functools
import hashlib
import asyncio
from pathlib import Path
from typing import Dict, Optional, Any, Union, Callable
from datetime import datetime, timezone

import yaml


def save_config(config: Dict[str, Any], filepath: Union[str, Path]) -> None:
    """
    Save configuration or state to file.

    Args:
        config: Configuration dictionary
        filepath: Path to save to; ``.yaml``/``.yml`` selects YAML, anything else JSON
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.suffix.lower() in ['.yaml', '.yml']:
        with open(filepath, 'w') as f:
            yaml.safe_dump(config, f, default_flow_style=False, indent=2)
    else:
        with open(filepath, 'w') as f:
            json.dump(config, f, indent=2, default=str)

    logging.getLogger(__name__).info(f"Configuration saved to {filepath}")


def load_config(filepath: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration or state from file.

    Args:
        filepath: Path to configuration file

    Returns:
        Configuration dictionary
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    if filepath.suffix.lower() in ['.yaml', '.yml']:
        with open(filepath, 'r') as f:
            config = yaml.safe_load(f)
    else:
        with open(filepath, 'r') as f:
            config = json.load(f)

    logging.getLogger(__name__).info(f"Configuration loaded from {filepath}")
    return config


def calculate_hash(data: Union[str, bytes, Dict, list], algorithm: str = 'sha256', salt: str = '') -> str:
    """
    Calculate a one-way hash of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm
        salt: Prefix mixed into the digest

    Returns:
        Hex digest of hash
    """
    if isinstance(data, str):
        data_bytes = data.encode('utf-8')
    elif isinstance(data, (dict, list)):
        data_bytes = json.dumps(data, sort_keys=True).encode('utf-8')
    elif isinstance(data, bytes):
        data_bytes = data
    else:
        data_bytes = str(data).encode('utf-8')

    hash_func = hashlib.new(algorithm)
    hash_func.update(salt.encode('utf-8'))
    hash_func.update(data_bytes)
    return hash_func.hexdigest()


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with microseconds."""
    return datetime.now(timezone.utc).isoformat()


def time_it(func: Optional[Callable] = None, *, logger: Optional[logging.Logger] = None):
    """
    Decorator to measure function execution time.

    Args:
        func: Function to decorate
        logger: Optional logger instance

    Returns:
        Decorated function or decorator
    """
    def decorator(f):
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return f(*args, **kwargs)
            finally:
                elapsed_time = time.perf_counter() - start_time
                (logger or logging.getLogger(f.__module__)).debug(
                    f"{f.__name__} executed in {elapsed_time:.4f} seconds"
                )

        @functools.wraps(f)
        async def async_wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return await f(*args, **kwargs)
            finally:
                elapsed_time = time.perf_counter() - start_time
                (logger or logging.getLogger(f.__module__)).debug(
                    f"{f.__name__} executed in {elapsed_time:.4f} seconds"
                )

        if asyncio.iscoroutinefunction(f):
            return async_wrapper
        return wrapper

    if func is None:
        return decorator
    return decorator(func)
