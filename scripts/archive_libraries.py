"""Mirror SharePoint Online document libraries to local or network storage.

Usage: archive_libraries.py <tenant> <DownloadPath>

Sites are read from <working dir>/<tenant>-sites.txt, one URL per line. Each
eligible document library is copied folder by folder, marked with a
``.Archived`` file on both sides, and summarised in <tenant>-archive-log.csv.
The first failing site stops the whole run and leaves the site list in place.
"""

import csv
import datetime
import fnmatch
import os
import sys
from collections import namedtuple
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from office365.sharepoint.client_context import ClientContext

from archive_common import (
    ARCHIVE_CERT_PASSWORD,
    LOG_HEADER,
    MARKER_NAME,
    ArchiveError,
    check_python_version,
    fail,
    get_param,
    tenant_domain,
    tenant_paths,
)

# ===== CONFIGURATION =====
DOCUMENT_LIBRARY = 101  # BaseTemplate of an ordinary document library
FORMS_FOLDER = "Forms"
SYSTEM_LIBRARY_PATTERNS = [
    "*/FormServerTemplates",
    "*/_catalogs/*",
    "*Assets",
    "*/Style Library",
    "*/SiteCollectionDocuments",
]
# ==========================

Credentials = namedtuple("Credentials", "tenant client_id thumbprint private_key")
Library = namedtuple("Library", "title root_folder")


@dataclass(frozen=True)
class MirrorResult:
    downloaded: int = 0
    created: int = 0
    skipped: int = 0

    def __add__(self, other):
        return MirrorResult(
            self.downloaded + other.downloaded,
            self.created + other.created,
            self.skipped + other.skipped,
        )


def ensure_dir(path):
    """Create path if missing. Returns True only when it was created."""
    if not os.path.exists(path):
        os.makedirs(path)
        return True
    return False


def local_path_for(folder_url, web_url, download_root):
    """Map a server-relative folder URL below web_url onto download_root."""
    folder_url = unquote(folder_url)
    prefix = unquote(web_url).rstrip("/") + "/"
    # SharePoint paths are case-insensitive; keep the folder's own casing.
    if folder_url.lower().startswith(prefix.lower()):
        rel = folder_url[len(prefix):]
    else:
        rel = folder_url.lstrip("/")
    parts = [p for p in rel.split("/") if p]
    return os.path.join(download_root, *parts)


def download_file(sp_file, file_path):
    """Download next to file_path and swap it in only once complete."""
    part_path = file_path + ".part"
    try:
        with open(part_path, "wb") as out:
            sp_file.download(out).execute_query()
        os.replace(part_path, file_path)
    finally:
        if os.path.exists(part_path):
            os.remove(part_path)


def mirror_folder(sp_folder, web_url, download_root):
    """Recursively copy sp_folder below download_root, skipping same-size files.

    Sizes are the only comparison made, so a changed file that kept its length
    is not picked up.
    """
    local_dir = local_path_for(sp_folder.serverRelativeUrl, web_url, download_root)
    result = MirrorResult(created=1 if ensure_dir(local_dir) else 0)

    files = sp_folder.files.get().execute_query()
    for f in files:
        file_path = os.path.join(local_dir, f.name)
        if os.path.isfile(file_path) and os.path.getsize(file_path) == int(f.length):
            result += MirrorResult(skipped=1)
            continue
        print(f"Downloading: {f.serverRelativeUrl} -> {file_path}")
        download_file(f, file_path)
        result += MirrorResult(downloaded=1)

    subfolders = sp_folder.folders.get().execute_query()
    for sub in subfolders:
        if sub.name == FORMS_FOLDER:
            continue
        result += mirror_folder(sub, web_url, download_root)
    return result


def is_system_library(root_url):
    path = unquote(root_url)
    return any(fnmatch.fnmatch(path.lower(), p.lower()) for p in SYSTEM_LIBRARY_PATTERNS)


def eligible_libraries(ctx):
    """Visible document libraries of the site, system libraries excluded."""
    libraries = []
    for lst in ctx.web.lists.get().execute_query():
        if lst.properties.get("BaseTemplate") != DOCUMENT_LIBRARY or lst.properties.get("Hidden"):
            continue
        root = lst.root_folder.get().execute_query()
        if is_system_library(root.serverRelativeUrl):
            continue
        libraries.append(Library(lst.properties.get("Title"), root))
    return libraries


def has_marker(sp_folder):
    return any(f.name == MARKER_NAME for f in sp_folder.files.get().execute_query())


def write_marker(sp_folder, local_dir):
    """Upload .Archived into sp_folder, then write the same marker into local_dir."""
    content = f"Archived {datetime.datetime.now():%Y-%m-%d %H:%M:%S}".encode("utf-8")
    sp_folder.files.add(MARKER_NAME, content, True).execute_query()
    with open(os.path.join(local_dir, MARKER_NAME), "wb") as fh:
        fh.write(content)


def append_log_row(log_path, url, result):
    is_new = not os.path.exists(log_path)
    with open(log_path, "a", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        if is_new:
            writer.writerow(LOG_HEADER)
        writer.writerow([url, result.downloaded, result.created, result.skipped])


def archive_library(library, web_url, download_root, log_path):
    """Mirror one library unless it already carries the archive marker.

    Returns the MirrorResult, or None when the library was skipped.
    """
    root = library.root_folder
    root_url = root.serverRelativeUrl
    if has_marker(root):
        print(f"Skipping {root_url}: already archived")
        return None

    print(f"> Archiving library '{library.title}' ({root_url})")
    result = mirror_folder(root, web_url, download_root)
    write_marker(root, local_path_for(root_url, web_url, download_root))
    append_log_row(log_path, root_url, result)
    print(f"{root_url}: {result.downloaded} downloaded, "
          f"{result.created} folders created, {result.skipped} skipped")
    return result


def load_certificate(cert_path, password=ARCHIVE_CERT_PASSWORD):
    """Return (thumbprint, PEM private key) from a password-protected PFX."""
    with open(cert_path, "rb") as fh:
        key, cert, _ = pkcs12.load_key_and_certificates(fh.read(), password.encode())
    if key is None or cert is None:
        raise ArchiveError(f"{cert_path} does not contain a key and certificate")
    thumbprint = cert.fingerprint(hashes.SHA1()).hex().upper()
    private_key = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return thumbprint, private_key


def connect(site_url, credentials):
    ctx = ClientContext(site_url).with_client_certificate(
        tenant_domain(credentials.tenant),
        credentials.client_id,
        credentials.thumbprint,
        private_key=credentials.private_key,
    )
    web = ctx.web.get().execute_query()
    print(f"Connected to {site_url} ({web.properties.get('Title')})")
    return ctx


def site_download_root(web_url, site_url, download_root):
    """Local root for a site: the web's path below download_root, e.g. sites/hr."""
    parts = [p for p in unquote(web_url).split("/") if p]
    if not parts:
        parts = [urlparse(site_url).netloc]
    return os.path.join(download_root, *parts)


def archive_sites(sites, credentials, download_root, log_path):
    """Archive every site in order. Returns False as soon as one site fails."""
    for url in sites:
        try:
            ctx = connect(url, credentials)
            web_url = ctx.web.properties.get("ServerRelativeUrl") or urlparse(url).path
            site_root = site_download_root(web_url, url, download_root)
            for library in eligible_libraries(ctx):
                archive_library(library, web_url, site_root, log_path)
        except Exception as e:
            print(f"ERROR: {url}: {e}")
            return False
    return True


def read_sites(path):
    with open(path, encoding="utf-8") as fh:
        lines = [line.strip() for line in fh]
    return [line for line in lines if line and not line.startswith("#")]


def clear_sites(path):
    open(path, "w").close()


def main(argv=None):
    argv = sys.argv if argv is None else argv
    check_python_version()
    tenant = get_param(argv, 1, "ARCHIVE_TENANT", "tenant")
    download_root = get_param(argv, 2, "ARCHIVE_DOWNLOAD_PATH", "DownloadPath")
    paths = tenant_paths(tenant)

    if not os.path.exists(paths["sites"]):
        fail(f"Site list not found: {paths['sites']}")
    sites = read_sites(paths["sites"])
    if not sites:
        fail(f"Site list is empty: {paths['sites']}")
    for key in ("client_id", "certificate"):
        if not os.path.exists(paths[key]):
            fail(f"{paths[key]} not found; run register_app.py {tenant} first")

    with open(paths["client_id"], encoding="utf-8") as fh:
        client_id = fh.read().strip()
    try:
        thumbprint, private_key = load_certificate(paths["certificate"])
    except (ValueError, ArchiveError) as e:
        fail(f"Cannot load certificate {paths['certificate']}: {e}")
    credentials = Credentials(tenant, client_id, thumbprint, private_key)

    print(f"Archiving {len(sites)} site(s) for {tenant} to {download_root}")
    if not archive_sites(sites, credentials, download_root, paths["log"]):
        print(f"Run aborted. {paths['sites']} left unchanged for a rerun.")
        sys.exit(1)

    clear_sites(paths["sites"])
    print("✅ Archive complete.")


if __name__ == "__main__":
    main()
