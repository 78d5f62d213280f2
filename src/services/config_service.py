import json
import logging
import os
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
                                     'config', 'default.json')

DEFAULT_ROLLUP_FIELDS = [
    "Microsoft.VSTS.Scheduling.RemainingWork",
    "Microsoft.VSTS.Scheduling.OriginalEstimate",
]


class ConfigurationError(Exception):
    """Raised when a settings or backlog configuration file is missing or invalid"""
    pass


@dataclass
class RollupSettings:
    fields_to_rollup: List[str] = field(default_factory=lambda: list(DEFAULT_ROLLUP_FIELDS))
    # Updates are made in batches to cut down on round trips
    batch_size: int = 50
    # Safety net against a logic error updating far too many items
    max_updates: int = 100
    max_ids_per_call: int = 200
    skip_tag: str = "SkipProjection"
    cutline_tag: str = "Cutline"
    api_version: str = "7.0"
    ado_info_settings_file: Optional[str] = None


@dataclass
class BacklogConfig:
    area_paths: List[str] = field(default_factory=list)
    query_extension_for_rollup: Optional[str] = None
    query_extension_for_projection: Optional[str] = None
    capacity: Optional[float] = None


@dataclass
class AdoConnection:
    organization: str
    project: str
    pat: str


def _read_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Configuration file {path} is not valid JSON: {str(e)}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a JSON object")
    return data


def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"'{key}' must be a positive integer, got {value!r}")
    return value


def load_settings(path: Optional[str] = None) -> RollupSettings:
    """
    Load tool-wide settings

    The path defaults to ADO_ROLLUP_SETTINGS, then config/default.json. A missing
    default file falls back to built-in defaults.
    """
    path = path or os.environ.get("ADO_ROLLUP_SETTINGS")
    if path is None:
        if not os.path.exists(DEFAULT_SETTINGS_PATH):
            logger.debug("No settings file found, using built-in defaults")
            return RollupSettings()
        path = DEFAULT_SETTINGS_PATH

    data = _read_json(path)
    defaults = RollupSettings()

    fields_to_rollup = data.get("fieldsToRollup", defaults.fields_to_rollup)
    if not isinstance(fields_to_rollup, list) or not fields_to_rollup:
        raise ConfigurationError("'fieldsToRollup' must be a non-empty list of field names")

    settings = RollupSettings(
        fields_to_rollup=[str(f) for f in fields_to_rollup],
        batch_size=_positive_int(data, "batchSize", defaults.batch_size),
        max_updates=_positive_int(data, "maxUpdates", defaults.max_updates),
        max_ids_per_call=_positive_int(data, "maxIdsInSingleCall", defaults.max_ids_per_call),
        skip_tag=data.get("skipTag", defaults.skip_tag),
        cutline_tag=data.get("cutlineTag", defaults.cutline_tag),
        api_version=str(data.get("apiVersion", defaults.api_version)),
        ado_info_settings_file=data.get("adoInfoSettingsFile")
    )
    # A relative ADO info file is resolved next to the settings file
    if settings.ado_info_settings_file and not os.path.isabs(settings.ado_info_settings_file):
        settings.ado_info_settings_file = os.path.join(os.path.dirname(os.path.abspath(path)),
                                                       settings.ado_info_settings_file)

    logger.debug(f"Loaded settings from {path}: {settings}")
    return settings


def load_backlog_config(path: str) -> BacklogConfig:
    """Load the per-backlog file naming area paths, query extensions and capacity"""
    data = _read_json(path)

    area_paths = data.get("areaPaths", [])
    if not isinstance(area_paths, list):
        raise ConfigurationError(f"areaPaths not setup correctly in '{path}'")

    capacity = data.get("capacity")
    if capacity is not None and (isinstance(capacity, bool) or not isinstance(capacity, (int, float))):
        raise ConfigurationError(f"capacity in '{path}' must be a number")

    return BacklogConfig(
        area_paths=[str(a) for a in area_paths],
        query_extension_for_rollup=data.get("queryExtensionForRollup"),
        query_extension_for_projection=data.get("queryExtensionForProjection"),
        capacity=capacity
    )


def load_ado_connection(settings: RollupSettings) -> AdoConnection:
    """
    Resolve the Azure DevOps organization, project and PAT

    Environment variables win over the ADO info file.
    """
    file_data: Dict[str, Any] = {}
    if settings.ado_info_settings_file and os.path.exists(settings.ado_info_settings_file):
        file_data = _read_json(settings.ado_info_settings_file)
    endpoint_info = file_data.get("endpointInfo", {})

    organization = os.environ.get("AZURE_DEVOPS_ORG") or endpoint_info.get("organization")
    project = os.environ.get("AZURE_DEVOPS_PROJECT") or endpoint_info.get("project")
    pat = os.environ.get("AZURE_DEVOPS_PAT") or file_data.get("adoPersonalAccessToken")

    missing = [name for name, value in [("organization", organization), ("project", project), ("PAT", pat)]
               if not value]
    if missing:
        raise ConfigurationError(
            f"Missing Azure DevOps {', '.join(missing)}. Set AZURE_DEVOPS_ORG, AZURE_DEVOPS_PROJECT "
            f"and AZURE_DEVOPS_PAT or provide them in the ADO info settings file."
        )

    return AdoConnection(organization=organization, project=project, pat=pat)
