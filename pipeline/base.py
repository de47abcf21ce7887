"""
Abstract collaborator contracts for the export pipeline.

The pipeline stages only talk to the outside world through these three
interfaces:

- SourceClient: reads records from the storefront API
- FormatConverter: serialises the (transformed) data into a file
- DestinationClient: writes that file to the remote destination

Concrete implementations live in ``pipeline.clients``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from schemas.credentials import DecryptedCredentials

# {api_name: [record, ...]}
ApiData = Dict[str, List[Dict[str, Any]]]


@dataclass
class FormattedOutput:
    """A serialised export file ready for upload."""
    path: str
    format: str
    size: int
    content: Optional[bytes] = None

    def read_bytes(self) -> bytes:
        if self.content is not None:
            return self.content
        with open(self.path, "rb") as f:
            return f.read()

    @property
    def filename(self) -> str:
        return self.path.replace("\\", "/").rsplit("/", 1)[-1]


class SourceClient(ABC):
    """
    Reads records from one source API endpoint.

    The client owns its own authentication and rate-limit handling; any error
    it raises is wrapped in ``ExtractionError`` by the extract stage.
    """

    @abstractmethod
    async def fetch(
        self,
        credentials: Dict[str, Any],
        endpoint: str,
        selected_fields: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """
        Fetch every record of ``endpoint``.

        Args:
            credentials: Source credentials (shop name, access token)
            endpoint: API endpoint name (e.g. "orders")
            selected_fields: Fields to keep per record (None keeps everything)
        """
        pass


class FormatConverter(ABC):
    """Serialises pipeline data into one file format."""

    format_name: str = ""

    @abstractmethod
    def convert(self, data: ApiData) -> FormattedOutput:
        pass


class DestinationClient(ABC):
    """Writes one formatted file to a destination of a single type."""

    @abstractmethod
    async def upload(
        self,
        output: FormattedOutput,
        destination_type: str,
        credentials: DecryptedCredentials
    ) -> Dict[str, Any]:
        """
        Upload ``output``. Credentials are already refreshed and decrypted.

        Returns:
            Provider metadata about the uploaded file (id, name, ...)

        Raises:
            DestinationError: Permanent failure (authorization, bad request)
            ProviderError: Transient failure; the upload stage retries it
        """
        pass
