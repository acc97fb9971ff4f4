import pathlib
import urllib.parse
import urllib.request
import requests
import tqdm
import validators
from dateutil import parser

import pi_imager.pretty_print as pretty_print
from pi_imager.exceptions import Image_Preparation_Error


class File_Downloader:
    """
    A class for downloading files
    """

    @staticmethod
    def is_url(reference: str) -> bool:
        return reference.startswith(("http://", "https://")) and bool(validators.url(reference))

    @staticmethod
    def _head(url: str) -> requests.Response:
        """
        Sends a HEAD request and stops the build if the status code is not 200 (OK).

        Args:
            url:
                File URL.

        Returns:
            The response of the HEAD request.

        Raises:
            Image_Preparation_Error:
                If the server cannot be reached or the file is not available.
        """

        try:
            response = requests.head(url, allow_redirects=True, timeout=30)
        except requests.exceptions.RequestException as e:
            raise Image_Preparation_Error(f"Unable to reach {url}: {e}") from e

        if response.status_code == 404:
            # File not found
            raise Image_Preparation_Error(
                f"The following file is not available: {url}\nStatus code {response.status_code} (File not found)"
            )
        elif response.status_code != 200:
            # Unexpected status code
            raise Image_Preparation_Error(
                f"The following file is not available: {url}\nUnexpected status code {response.status_code}"
            )

        return response

    @staticmethod
    def get_last_modified(url: str) -> float:
        """
        Fetches the Last-Modified timestamp, if available.

        Args:
            url:
                File URL.

        Returns:
            The Last-Modified timestamp or 0.0 if the server does not provide one.

        Raises:
            Image_Preparation_Error:
                If the file is not available.
        """

        # Get timestamp of the file online
        last_mod_online = File_Downloader._head(url).headers.get("Last-Modified")

        if not last_mod_online:
            return 0.0

        return parser.parse(last_mod_online).timestamp()

    @staticmethod
    def get_file_name(url: str) -> str:
        # Check the Content-Disposition header
        content_disposition = File_Downloader._head(url).headers.get("Content-Disposition")
        if content_disposition and "filename=" in content_disposition:
            # Extract the filename from the header
            filename = content_disposition.split("filename=")[1].strip('"')
        else:
            # Fallback to extracting the filename from the URL
            filename = pathlib.Path(urllib.parse.urlparse(url=url).path).name

        if not filename:
            raise Image_Preparation_Error(f"Unable to retrieve the file name of {url}")

        return filename

    @staticmethod
    def get_file(url: str, output_dir: pathlib.Path) -> pathlib.Path:
        """
        Downloads a single file. An existing download is reused if it is newer than the file on the server.

        Args:
            url:
                File URL.
            output_dir:
                Target directory in which the downloaded file is to be stored.

        Returns:
            Path of the downloaded file.

        Raises:
            Image_Preparation_Error:
                If the file cannot be downloaded.
        """

        # Progress callback function to show a status bar
        def download_progress(block_num, block_size, total_size):
            if download_progress.t is None:
                download_progress.t = tqdm.tqdm(total=total_size, unit="B", unit_scale=True, unit_divisor=1024)
            downloaded = block_num * block_size
            download_progress.t.update(downloaded - download_progress.t.n)

        filename = File_Downloader.get_file_name(url)
        target = output_dir / filename

        if target.is_file():
            last_mod_online = File_Downloader.get_last_modified(url)
            if last_mod_online and target.stat().st_mtime >= last_mod_online:
                pretty_print.print_build(f"No need to download {filename}. The local copy is up to date...")
                return target

        # Download the file
        output_dir.mkdir(parents=True, exist_ok=True)
        download_progress.t = None
        pretty_print.print_build(f"Downloading {filename}...")
        try:
            urllib.request.urlretrieve(url=url, filename=target, reporthook=download_progress)
        except OSError as e:
            target.unlink(missing_ok=True)
            raise Image_Preparation_Error(f"Download of {url} failed: {e}") from e
        finally:
            if download_progress.t:
                download_progress.t.close()

        return target
