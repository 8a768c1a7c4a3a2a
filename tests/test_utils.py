from mnn_integration.utils import (
    ConfigurationError,
    DEFAULT_MNN_PARAMS,
    get_mnn_params,
    load_config,
    setup_logging,
)
from pathlib import Path
import logging
import pytest

CONFIG_PATH = Path(__file__).parent.parent / "config" / "mnn_params.yaml"


def test_defaults_without_config():
    assert get_mnn_params() == DEFAULT_MNN_PARAMS
    assert get_mnn_params({}) == DEFAULT_MNN_PARAMS


def test_user_values_override_defaults():
    params = get_mnn_params({"integration": {"mnn": {"k": 5, "merge_order": ["b", "a"]}}})
    assert params["k"] == 5
    assert params["merge_order"] == ["b", "a"]
    assert params["knn_method"] == "exact"
    # defaults are not modified by overrides
    assert DEFAULT_MNN_PARAMS["k"] == 20


@pytest.mark.parametrize(
    "mnn",
    [
        {"k": 0},
        {"k": "20"},
        {"merge_order": "smallest_first"},
        {"knn_method": "faiss"},
        {"sigma": 0},
        {"k_smooth": 0},
        {"min_batch_skip": -1},
        {"max_iter": -1},
        {"max_iter": 2.5},
        {"tol": 0},
        {"n_neighbours": 10},
    ],
)
def test_invalid_params(mnn):
    with pytest.raises(ConfigurationError):
        get_mnn_params({"integration": {"mnn": mnn}})


def test_shipped_config_is_valid():
    config = load_config(CONFIG_PATH)
    params = get_mnn_params(config)
    assert params["k"] == 20
    assert params["merge_order"] == "input"
    assert config["preprocessing"]["n_comps"] == 50


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_load_config_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == {}


def test_setup_logging_file_handler(tmp_path):
    log_file = tmp_path / "reports" / "run.log"
    logger = setup_logging(log_file=str(log_file), log_level="DEBUG", console_output=False)

    logger.debug("hello")
    for handler in logger.handlers:
        handler.flush()

    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    assert "[DEBUG] hello" in log_file.read_text()

    # repeated setup replaces handlers instead of stacking them
    logger = setup_logging(console_output=True)
    assert len(logger.handlers) == 1
