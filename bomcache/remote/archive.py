import asyncio
import ftplib
import io
import posixpath

from abc import ABC, abstractmethod
import logging

from ..errors import NetworkError

logger = logging.getLogger(__name__)

RADAR_DATA_DIR = "/anon/gen/radar"
RADAR_TRANSPARENCIES_DIR = "/anon/gen/radar_transparencies"
RADAR_CATALOG_PATH = "/anon/home/adfd/spatial/IDR00007.dbf"


class BaseArchive(ABC):
    """
    Abstract base class for a remote file archive holding radar tiles and overlays.

    Implementations list directories and download single files. Every failure is
    raised as NetworkError so the fetcher can record it per item.
    """

    data_dir = RADAR_DATA_DIR
    transparencies_dir = RADAR_TRANSPARENCIES_DIR
    catalog_path = RADAR_CATALOG_PATH

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    async def list_files(self, path: str) -> list[str]:
        """
        Return the bare file names found in the archive directory ``path``.
        """
        pass

    @abstractmethod
    async def get_bytes(self, path: str) -> bytes:
        """
        Download a single file.
        """
        pass

    async def list_data_layers(self) -> list[str]:
        return [name for name in await self.list_files(self.data_dir) if name.endswith(".png")]

    async def get_data_layer(self, filename: str) -> bytes:
        return await self.get_bytes(posixpath.join(self.data_dir, filename))

    async def get_transparency(self, filename: str) -> bytes:
        return await self.get_bytes(posixpath.join(self.transparencies_dir, filename))

    async def get_radar_catalog(self) -> bytes:
        """
        Download the dBase table listing every BOM radar site.
        """
        return await self.get_bytes(self.catalog_path)


class FtpArchive(BaseArchive):
    """
    Anonymous FTP access to the BOM radar archive.

    ftplib is blocking, so each call runs in a worker thread. One connection is
    opened on ``async with`` and reused for all requests of that block.
    """

    def __init__(
        self,
        host: str = "ftp.bom.gov.au",
        user: str = "anonymous",
        passwd: str = "guest",
        timeout: float = 30,
        **kwargs
    ):
        self.host = host
        self.user = user
        self.passwd = passwd
        self.timeout = timeout
        self._ftp: ftplib.FTP | None = None

    async def __aenter__(self):
        logger.info(f"Opening FTP session to {self.host}...")
        try:
            self._ftp = await asyncio.to_thread(self._connect)
        except ftplib.all_errors as e:
            raise NetworkError(f"Could not connect: {e}", resource=self.host) from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        logger.info("Closing FTP session...")
        if self._ftp is not None:
            ftp, self._ftp = self._ftp, None
            try:
                await asyncio.to_thread(ftp.quit)
            except ftplib.all_errors as e:
                logger.debug(f"Error closing FTP session: {e}")
                ftp.close()

    def _connect(self) -> ftplib.FTP:
        ftp = ftplib.FTP(self.host, timeout=self.timeout)
        ftp.login(self.user, self.passwd)
        return ftp

    def _require_connection(self) -> ftplib.FTP:
        if self._ftp is None:
            raise ValueError("Open the archive with 'async with' before requesting files")
        return self._ftp

    async def list_files(self, path: str) -> list[str]:
        ftp = self._require_connection()
        logger.debug(f"Listing directory {self.host}{path}")
        try:
            names = await asyncio.to_thread(ftp.nlst, path)
        except ftplib.all_errors as e:
            raise NetworkError(f"Error listing directory: {e}", resource=path) from e
        return [posixpath.basename(name) for name in names]

    async def get_bytes(self, path: str) -> bytes:
        ftp = self._require_connection()
        logger.debug(f"Downloading {self.host}{path}")
        buffer = io.BytesIO()
        try:
            await asyncio.to_thread(ftp.retrbinary, f"RETR {path}", buffer.write)
        except ftplib.all_errors as e:
            raise NetworkError(f"Error downloading file: {e}", resource=path) from e
        return buffer.getvalue()
