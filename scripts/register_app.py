"""Register the Azure AD application used by archive_libraries.py.

Usage: register_app.py <tenant>

Signs in interactively (device code), creates the application with a fresh
self-signed certificate and saves <tenant>-clientid.txt and <tenant>.pfx in
the working directory.
"""

import base64
import datetime
import sys

import msal
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from archive_common import (
    ARCHIVE_CERT_PASSWORD,
    ArchiveError,
    check_python_version,
    fail,
    get_env,
    get_param,
    tenant_domain,
    tenant_paths,
)

# ===== CONFIGURATION =====
GRAPH_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPES = ["https://graph.microsoft.com/Application.ReadWrite.All"]
# Microsoft Graph Command Line Tools
DEFAULT_PUBLIC_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
SHAREPOINT_APP_ID = "00000003-0000-0ff1-ce00-000000000000"
SITES_FULL_CONTROL_ALL = "678536fe-1083-478a-9c59-b99265e6b0d3"
CERT_VALID_DAYS = 730
# ==========================


def app_name(tenant):
    return f"SPO-Archive-{tenant}"


def acquire_token(tenant, client_id):
    app = msal.PublicClientApplication(
        client_id,
        authority=f"https://login.microsoftonline.com/{tenant_domain(tenant)}",
    )
    flow = app.initiate_device_flow(scopes=GRAPH_SCOPES)
    if "user_code" not in flow:
        raise ArchiveError(f"Failed to start device flow: {flow.get('error_description', 'unknown error')}")
    print(flow["message"])

    result = app.acquire_token_by_device_flow(flow)
    if "access_token" not in result:
        raise ArchiveError(f"Sign-in failed: {result.get('error_description', result.get('error'))}")
    return result["access_token"]


def graph_session(token):
    session = requests.Session()
    session.headers.update({"Authorization": f"Bearer {token}"})
    return session


def graph_call(session, method, path, **kwargs):
    resp = session.request(method, GRAPH_URL + path, **kwargs)
    if not resp.ok:
        raise ArchiveError(f"{method} {path} failed ({resp.status_code}): {resp.text}")
    return resp.json() if resp.content else {}


def find_applications(session, name):
    data = graph_call(session, "GET", "/applications",
                      params={"$filter": f"displayName eq '{name}'"})
    return data.get("value", [])


def delete_application(session, app):
    graph_call(session, "DELETE", f"/applications/{app['id']}")


def confirm_recreate(name):
    """Ask whether an existing registration should be replaced. Empty means skip."""
    while True:
        answer = input(f"Application '{name}' already exists. [D]elete and recreate / [S]kip: ")
        answer = answer.strip().lower()
        if answer in ("d", "delete"):
            return True
        if answer in ("", "s", "skip"):
            return False


def create_certificate(common_name, days=CERT_VALID_DAYS):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return key, cert


def register_application(session, name, cert):
    """Create the application and its service principal. Returns the application."""
    der = cert.public_bytes(serialization.Encoding.DER)
    body = {
        "displayName": name,
        "signInAudience": "AzureADMyOrg",
        "keyCredentials": [{
            "type": "AsymmetricX509Cert",
            "usage": "Verify",
            "key": base64.b64encode(der).decode(),
            "displayName": f"CN={name}",
        }],
        "requiredResourceAccess": [{
            "resourceAppId": SHAREPOINT_APP_ID,
            "resourceAccess": [{"id": SITES_FULL_CONTROL_ALL, "type": "Role"}],
        }],
    }
    app = graph_call(session, "POST", "/applications", json=body)
    graph_call(session, "POST", "/servicePrincipals", json={"appId": app["appId"]})
    return app


def save_credentials(paths, app_id, name, key, cert, password=ARCHIVE_CERT_PASSWORD):
    with open(paths["client_id"], "w", encoding="utf-8") as fh:
        fh.write(app_id)
    pfx = pkcs12.serialize_key_and_certificates(
        name.encode(), key, cert, None,
        serialization.BestAvailableEncryption(password.encode()),
    )
    with open(paths["certificate"], "wb") as fh:
        fh.write(pfx)


def main(argv=None):
    argv = sys.argv if argv is None else argv
    check_python_version()
    tenant = get_param(argv, 1, "ARCHIVE_TENANT", "tenant")
    paths = tenant_paths(tenant)
    name = app_name(tenant)

    try:
        token = acquire_token(tenant, get_env("ARCHIVE_REGISTRATION_CLIENT_ID", DEFAULT_PUBLIC_CLIENT_ID))
        session = graph_session(token)

        existing = find_applications(session, name)
        if existing:
            if not confirm_recreate(name):
                print(f"Keeping existing application '{name}'. Nothing registered.")
                return
            for app in existing:
                print(f"> Deleting application {app.get('appId')}")
                delete_application(session, app)

        key, cert = create_certificate(name)
        app = register_application(session, name, cert)
        save_credentials(paths, app["appId"], name, key, cert)
    except (ArchiveError, requests.RequestException, OSError) as e:
        fail(f"Registration of '{name}' failed: {e}")

    print(f"Registered '{name}' with client id {app['appId']}")
    print(f"Client id:   {paths['client_id']}")
    print(f"Certificate: {paths['certificate']}")
    print("WARNING: SharePoint app permissions need admin consent before archiving works:")
    print(f"  https://login.microsoftonline.com/{tenant_domain(tenant)}/adminconsent?client_id={app['appId']}")


if __name__ == "__main__":
    main()
