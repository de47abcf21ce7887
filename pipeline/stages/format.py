"""
Format stage: select the converter for a destination's file format.
"""

import logging
import os
from typing import Dict, Iterable, Optional

from core.exceptions import FormatError
from pipeline.base import ApiData, FormatConverter, FormattedOutput

logger = logging.getLogger(__name__)


class Formatter:
    """Maps lower-cased format names to converters."""

    def __init__(self, converters: Iterable[FormatConverter]):
        self.converters: Dict[str, FormatConverter] = {
            c.format_name.lower(): c for c in converters
        }

    @property
    def supported_formats(self):
        return sorted(self.converters)

    def format(self, data: ApiData, file_format: Optional[str]) -> FormattedOutput:
        """
        Raises:
            FormatError: Unsupported format or converter failure
        """
        name = (file_format or "").lower()
        converter = self.converters.get(name)
        if converter is None:
            raise FormatError(
                f"Unsupported file format: {file_format}",
                context={"file_format": file_format, "supported": self.supported_formats}
            )

        try:
            output = converter.convert(data)
        except FormatError:
            raise
        except Exception as e:
            raise FormatError(
                f"Failed to convert data to {name}: {e}",
                context={"file_format": name},
                original_exception=e
            )

        logger.info(f"Formatted export as {name}: {output.path} ({output.size} bytes)")
        return output

    @staticmethod
    def cleanup(output: FormattedOutput) -> None:
        """Remove the export file once it has been uploaded (or the run failed)."""
        try:
            os.remove(output.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clean up export file {output.path}: {e}")
