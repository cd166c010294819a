#!/usr/bin/env python3
"""Cluster operations common library functions and classes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import chain
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from unittest import mock

from spicerack import Spicerack
from wmflib.config import load_yaml_config

LOGGER = logging.getLogger(__name__)
CONFIG_FILE_NAME = "clusterops.yaml"
DEFAULT_STATE_DIR = "~/.cache/clusterops/rolling-restart"


class ClusterOpsConfigError(Exception):
    """Risen when the cluster operations configuration is missing or malformed."""


class ArgparsableEnum(Enum):
    """Enum that behaves well with argparse.

    Example usage:

    class MyEnum(ArgparsableEnum):
        OPT1 = "option 1"
        OPT2 = "option 2"

    parser.add_argument(
        "--my-enum",
        choices=list(MyEnum),
        type=MyEnum,
        default=MyEnum.OPT1,
    )
    """

    def __str__(self):
        """Needed to show the nice string values and for argparse to use those to call the `type` parameter."""
        return self.value


@dataclass(frozen=True)
class ClusterOpsConfig:
    """Site configuration for the cluster cookbooks.

    Read from `<spicerack config dir>/cookbooks/clusterops.yaml`, for example:

    ```
    cms_url: https://cms.cluster1.example.org:8765/api/v1
    cms_token: some-secret-token
    ca_bundle: /etc/ssl/certs/ca-certificates.crt
    state_dir: /srv/clusterops/state
    request_timeout_seconds: 300
    poll_interval_seconds: 5
    units:
      storage:
        standard: ydb-server-storage.service
        internal: kikimr
    ```
    """

    cms_url: str
    cms_token: Optional[str] = None
    ca_bundle: Optional[str] = None
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    request_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 5.0
    units: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ClusterOpsConfig":
        """Build the config from the loaded yaml contents."""
        cms_url = config.get("cms_url")
        if not cms_url:
            raise ClusterOpsConfigError("Missing mandatory 'cms_url' in the cluster operations config.")

        units = config.get("units") or {}
        if not isinstance(units, dict) or not all(isinstance(names, dict) for names in units.values()):
            raise ClusterOpsConfigError(f"Malformed 'units' entry, expected a mapping per node kind, got: {units}")

        try:
            return cls(
                cms_url=cms_url.rstrip("/"),
                cms_token=config.get("cms_token"),
                ca_bundle=config.get("ca_bundle"),
                state_dir=Path(config.get("state_dir", DEFAULT_STATE_DIR)).expanduser(),
                request_timeout_seconds=float(config.get("request_timeout_seconds", 300.0)),
                poll_interval_seconds=float(config.get("poll_interval_seconds", 5.0)),
                units=units,
            )
        except (TypeError, ValueError) as error:
            raise ClusterOpsConfigError(f"Malformed cluster operations config: {error}") from error

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> "ClusterOpsConfig":
        """Load the config from the spicerack configuration directory."""
        config_file = config_dir / "cookbooks" / CONFIG_FILE_NAME
        LOGGER.info("Loading cluster operations config from %s", config_file)
        return cls.from_dict(load_yaml_config(config_file=config_file, raises=False))


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class TestUtils:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: Dict[str, Dict[str, Any]]) -> Dict[str, Union[str, List[Any]]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**TestUtils.to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        # sorted to keep the param order stable across runs (pytest-xdist needs it)
        _param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(must_param, None) for must_param in _param_names]

        if len(_param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]

        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(_param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_fake_spicerack(config_dir: Optional[Path] = None, dry_run: bool = False) -> mock.MagicMock:
        """Create a fake spicerack."""
        fake_spicerack = mock.MagicMock(spec=Spicerack)
        fake_spicerack.config_dir = config_dir or Path("/etc/spicerack")
        fake_spicerack.dry_run = dry_run
        return fake_spicerack
