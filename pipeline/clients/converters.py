"""
File format converters (CSV, JSON, XML).

Each converter writes its output to ``EXPORT_DIR`` under a random hex name
and returns a ``FormattedOutput`` describing the file.
"""

import json
import logging
import os
import secrets
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

import pandas as pd

from core.config import settings
from pipeline.base import ApiData, FormatConverter, FormattedOutput

logger = logging.getLogger(__name__)


class FileConverter(FormatConverter):
    """Shared file handling: random naming under the export directory."""

    def __init__(self, export_dir: Optional[str] = None):
        self.export_dir = export_dir or settings.EXPORT_DIR

    def render(self, data: ApiData) -> bytes:
        raise NotImplementedError

    def convert(self, data: ApiData) -> FormattedOutput:
        content = self.render(data)

        os.makedirs(self.export_dir, exist_ok=True)
        path = os.path.join(self.export_dir, f"{secrets.token_hex(16)}.{self.format_name}")
        with open(path, "wb") as f:
            f.write(content)
        logger.debug(f"Wrote {len(content)} bytes to {path}")

        return FormattedOutput(
            path=path, format=self.format_name, size=len(content), content=content
        )


class CSVConverter(FileConverter):
    """
    One CSV table for all APIs, with an ``api`` column naming the source API.

    Nested objects are flattened to ``parent_child`` columns and lists are
    joined with ", ".
    """

    format_name = "csv"

    @staticmethod
    def _flatten_lists(record: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: ", ".join(str(v) for v in value) if isinstance(value, list) else value
            for key, value in record.items()
        }

    def render(self, data: ApiData) -> bytes:
        frames: List[pd.DataFrame] = []
        for api_name, records in data.items():
            if not records:
                continue
            frame = pd.json_normalize(records, sep="_")
            frame = pd.DataFrame(
                [self._flatten_lists(r) for r in frame.to_dict(orient="records")],
                columns=frame.columns,
            )
            frame.insert(0, "api", api_name)
            frames.append(frame)

        if not frames:
            return b""

        df = pd.concat(frames, ignore_index=True, sort=False)
        return df.to_csv(index=False).encode("utf-8")


class JSONConverter(FileConverter):
    format_name = "json"

    def render(self, data: ApiData) -> bytes:
        return json.dumps(data, indent=2, default=str).encode("utf-8")


class XMLConverter(FileConverter):
    """``<data>`` root, one element per API, one ``<record>`` per record."""

    format_name = "xml"

    @staticmethod
    def _tag(name: str) -> str:
        cleaned = "".join(c if c.isalnum() or c in "_-." else "_" for c in str(name))
        if not cleaned or not (cleaned[0].isalpha() or cleaned[0] == "_"):
            cleaned = f"_{cleaned}"
        return cleaned

    def _append(self, parent: ET.Element, name: str, value: Any) -> None:
        if isinstance(value, list):
            for item in value:
                self._append(parent, name, item)
            return

        element = ET.SubElement(parent, self._tag(name))
        if isinstance(value, dict):
            for key, child in value.items():
                self._append(element, key, child)
        elif value is not None:
            element.text = str(value).lower() if isinstance(value, bool) else str(value)

    def render(self, data: ApiData) -> bytes:
        root = ET.Element("data")
        for api_name, records in data.items():
            api_element = ET.SubElement(root, self._tag(api_name))
            for record in records:
                self._append(api_element, "record", record)

        ET.indent(root)
        return ET.tostring(root, encoding="unicode").encode("utf-8")


def default_converters(export_dir: Optional[str] = None) -> List[FileConverter]:
    return [CSVConverter(export_dir), JSONConverter(export_dir), XMLConverter(export_dir)]
