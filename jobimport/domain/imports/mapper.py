"""
Resolve file headers onto canonical job fields.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config_model import ImportConfiguration
from .errors import MappingError
from .job_schema import ALIAS_TABLE, normalize_token

logger = logging.getLogger(__name__)


@dataclass
class ColumnResolution:
    """Outcome of mapping one header row."""
    header_to_field: Dict[str, str] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)  # header -> "config" | "alias"
    unmapped_headers: List[str] = field(default_factory=list)
    conflicting_headers: Dict[str, str] = field(default_factory=dict)  # header -> field already taken
    missing_required: List[str] = field(default_factory=list)

    @property
    def field_to_header(self) -> Dict[str, str]:
        return {field_name: header for header, field_name in self.header_to_field.items()}


def _match_header(header: str, configuration: Optional[ImportConfiguration], source: str) -> Optional[str]:
    if source == "config":
        if configuration is None:
            return None
        return configuration.header_mapping.get(header.strip().lower())
    return ALIAS_TABLE.get(normalize_token(header))


def suggest_mapping(
    headers: Sequence[str],
    configuration: Optional[ImportConfiguration] = None,
    required_fields: Optional[Sequence[str]] = None,
) -> ColumnResolution:
    """
    Map headers onto fields: configured mappings (case-insensitive) first,
    then the built-in alias table, else unmapped. Within each pass the first
    header to claim a field keeps it.
    """
    resolution = ColumnResolution()
    claimed: Dict[str, str] = {}
    matches: Dict[str, tuple] = {}

    for source in ("config", "alias"):
        for header in headers:
            if header in matches or header in resolution.conflicting_headers:
                continue
            field_name = _match_header(header, configuration, source)
            if field_name is None:
                continue
            if field_name in claimed:
                resolution.conflicting_headers[header] = field_name
                continue
            claimed[field_name] = header
            matches[header] = (field_name, source)

    for header in headers:
        if header in matches:
            field_name, source = matches[header]
            resolution.header_to_field[header] = field_name
            resolution.sources[header] = source
        else:
            resolution.unmapped_headers.append(header)

    if required_fields is None:
        required_fields = configuration.required_fields if configuration is not None else []
    resolution.missing_required = [name for name in required_fields if name not in claimed]
    return resolution


def resolve_columns(headers: Sequence[str], configuration: ImportConfiguration) -> ColumnResolution:
    """
    Resolve headers for an import run.

    Raises:
        MappingError: once for the whole file when a required field has no column
    """
    resolution = suggest_mapping(headers, configuration)
    if resolution.conflicting_headers:
        logger.warning(
            "Headers ignored because their field is already mapped: %s",
            resolution.conflicting_headers,
        )
    if resolution.missing_required:
        raise MappingError(resolution.missing_required, headers)
    logger.info(
        "Resolved %d of %d headers (%d unmapped)",
        len(resolution.header_to_field),
        len(headers),
        len(resolution.unmapped_headers),
    )
    return resolution
