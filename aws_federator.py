#!/usr/bin/env python3
"""
aws-federator: CLI tool to obtain temporary AWS credentials via SAML federation.

Authenticates against a SAML identity provider, lists the IAM roles the
assertion authorizes, assumes the configured (or selected) role via STS and
writes the temporary credentials to a profile in ~/.aws/credentials.
"""

import argparse
import base64
import binascii
import collections
import configparser
import getpass
import logging
import os
import sys
import tempfile
import xml.etree.ElementTree as ET
from urllib.parse import urljoin, urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError
from bs4 import BeautifulSoup

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.aws/federatedcli")
DEFAULT_CREDENTIALS_PATH = os.path.expanduser("~/.aws/credentials")
DEFAULT_ACCOUNT = "default"
DEFAULT_PROFILE = "default"
ACCOUNT_MAP_SECTION = "account_map"

DEFAULT_SESSION_DURATION = 3600  # 1 hour
MAX_SESSION_DURATION = 43200  # STS max is 12 h
STS_REGION = "us-east-1"
HTTP_TIMEOUT = 30

SAML_ROLE_ATTRIBUTE = "https://aws.amazon.com/SAML/Attributes/Role"
SAML_SESSION_ATTRIBUTE = "https://aws.amazon.com/SAML/Attributes/SessionDuration"
SAML_NS = "{urn:oasis:names:tc:SAML:2.0:assertion}"

ACCESS_KEY_ID = "aws_access_key_id"
SECRET_ACCESS_KEY = "aws_secret_access_key"
SESSION_TOKEN = "aws_session_token"

LOG = logging.getLogger("aws_federator")

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class FederatorError(Exception):
    """Base class for every fatal error raised by aws-federator."""


class ConfigNotFound(FederatorError):
    pass


class ConfigParseError(FederatorError):
    pass


class MissingAccount(FederatorError):
    pass


class MissingRequiredKey(FederatorError):
    pass


class RoleNotFound(FederatorError):
    """The configured role is not among the roles the assertion authorizes."""


class InvalidSelection(FederatorError):
    """The interactive role selection was not a valid menu index."""


class InitFailure(FederatorError):
    pass


class AuthFailure(FederatorError):
    pass


class RetrievalFailure(FederatorError):
    pass


class AssumeFailure(FederatorError):
    pass


class CredentialWriteFailure(FederatorError):
    pass


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class Role(str):
    """An assumable IAM role, ``arn:aws:iam::<account-id>:role/<role-name>``.

    Compares and hashes as the plain ARN string.
    """

    __slots__ = ()

    @property
    def arn(self):
        return str(self)

    @property
    def account_id(self):
        parts = self.split(":")
        return parts[4] if len(parts) > 5 else ""

    @property
    def role_name(self):
        return self.rsplit("/", 1)[-1]


AccountConfig = collections.namedtuple(
    "AccountConfig", "name identity_url username password assume_role"
)

Credentials = collections.namedtuple(
    "Credentials", "access_key_id secret_access_key session_token expiration"
)

# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------


def _new_parser():
    # Raw values and case-preserving keys: passwords may contain '%' and
    # foreign keys must survive a rewrite untouched.
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str
    return parser


def load_config(path, log=LOG):
    """Load the federator configuration from an INI file.

    Raises ConfigNotFound when the file does not exist and ConfigParseError
    when it is not valid INI.
    """
    log.debug("Loading configuration from file: %s", path)
    if not os.path.isfile(path):
        raise ConfigNotFound(f"Configuration file not found: {path}")

    config = _new_parser()
    try:
        with open(path) as fh:
            config.read_file(fh)
    except configparser.Error as exc:
        raise ConfigParseError(f"Unable to parse configuration file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigNotFound(f"Unable to read configuration file {path}: {exc}") from exc
    return config


def match_account(config, name):
    """Return the section whose name is exactly *name*, or None."""
    for section in config.sections():
        if section == name:
            return config[section]
    return None


def required_key(section, key):
    if key not in section:
        raise MissingRequiredKey(
            f"Account configuration '{section.name}' does not have an '{key}' defined"
        )
    return section[key]


def optional_key(section, key, fallback=None):
    return section.get(key, fallback)


def account_config(section):
    """Build an AccountConfig from a configuration section."""
    return AccountConfig(
        name=section.name,
        identity_url=required_key(section, "sp_identity_url"),
        username=optional_key(section, "username"),
        password=optional_key(section, "password"),
        assume_role=optional_key(section, "assume_role"),
    )


def load_account_map(config):
    """Return {account_id: label} from the account_map section, or None."""
    if not config.has_section(ACCOUNT_MAP_SECTION):
        return None
    return dict(config.items(ACCOUNT_MAP_SECTION, raw=True))


# ---------------------------------------------------------------------------
# Role selection
# ---------------------------------------------------------------------------


def _menu_label(role, account_map):
    if account_map and role.account_id in account_map:
        return f"{account_map[role.account_id]}:role/{role.role_name}"
    return role.arn


def resolve_role(roles, account, account_map=None, prompt=input, log=LOG):
    """Pick the role to assume from *roles*.

    In order of precedence:
    1. the account's ``assume_role``, which must be present in *roles*;
    2. the only role, when exactly one is available;
    3. an interactive numbered menu, read once through *prompt*.

    Raises RoleNotFound when the configured role is missing or there is
    nothing to choose from, InvalidSelection for a bad menu answer.
    """
    if account.assume_role is not None:
        for role in roles:
            if role == account.assume_role:
                log.debug("Using configured role: %s", role)
                return role
        raise RoleNotFound(
            f"Unable to find role '{account.assume_role}'. "
            "Perhaps your federator configuration is incorrect?"
        )

    if len(roles) == 1:
        return roles[0]

    if not roles:
        raise RoleNotFound("No roles are available to assume.")

    for n, role in enumerate(roles, 1):
        print(f"{n}) {_menu_label(role, account_map)}")

    try:
        answer = prompt("Enter the ID# of the role you want to assume: ")
        index = int(answer.strip())
    except (ValueError, EOFError):
        raise InvalidSelection("Invalid selection made.") from None

    if not 1 <= index <= len(roles):
        raise InvalidSelection(
            f"Invalid ID selection, must be in range from 1 to {len(roles)}."
        )
    return roles[index - 1]


# ---------------------------------------------------------------------------
# AWS credentials
# ---------------------------------------------------------------------------


def get_credentials_path():
    """Return the shared credentials file path, honouring AWS_SHARED_CREDENTIALS_FILE."""
    return os.environ.get("AWS_SHARED_CREDENTIALS_FILE", DEFAULT_CREDENTIALS_PATH)


def write_credentials(path, profile, credentials, log=LOG):
    """Upsert *credentials* into *profile* of the credentials file at *path*.

    Only the three managed keys of *profile* change; every other key and
    section is written back as it was read. The file is replaced atomically,
    so a failure leaves the previous content in place.
    """
    log.debug("Writing to AWS credentials file: %s", path)
    if not os.path.isfile(path):
        raise CredentialWriteFailure(f"Credentials file does not exist: {path}")

    config = _new_parser()
    try:
        with open(path) as fh:
            config.read_file(fh)
    except (configparser.Error, OSError) as exc:
        raise CredentialWriteFailure(f"Unable to load credentials file {path}: {exc}") from exc

    if not config.has_section(profile):
        log.debug("Creating credential profile: %s", profile)
        try:
            config.add_section(profile)
        except (configparser.Error, ValueError) as exc:
            raise CredentialWriteFailure(
                f"Unable to create credential profile '{profile}': {exc}"
            ) from exc

    config.set(profile, ACCESS_KEY_ID, credentials.access_key_id)
    config.set(profile, SECRET_ACCESS_KEY, credentials.secret_access_key)
    config.set(profile, SESSION_TOKEN, credentials.session_token)

    # Write through symlinks so a managed dotfile link stays a link.
    target = os.path.realpath(path)
    directory = os.path.dirname(target)
    try:
        fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".credentials.", suffix=".tmp")
    except OSError as exc:
        raise CredentialWriteFailure(f"Unable to save credentials to disk: {exc}") from exc

    try:
        with os.fdopen(fd, "w") as fh:
            config.write(fh)
        os.chmod(temp_path, 0o600)
        os.replace(temp_path, target)
    except OSError as exc:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        raise CredentialWriteFailure(f"Unable to save credentials to disk: {exc}") from exc


# ---------------------------------------------------------------------------
# SAML federation
# ---------------------------------------------------------------------------


def _find_saml_response(html):
    soup = BeautifulSoup(html, "lxml")
    tag = soup.find("input", {"name": "SAMLResponse"})
    if tag is None:
        return None
    return tag.get("value") or None


def _find_login_form(html):
    """Return the form holding a password field, else the first form, else None."""
    soup = BeautifulSoup(html, "lxml")
    for form in soup.find_all("form"):
        if form.find("input", {"type": "password"}):
            return form
    return soup.find("form")


def _build_login_payload(form, username, password):
    """Fill a login form: user/email fields get the username, pass fields the password."""
    payload = {}
    for tag in form.find_all("input"):
        name = tag.get("name")
        if not name:
            continue
        lowered = name.lower()
        if "user" in lowered or "email" in lowered:
            payload[name] = username
        elif "pass" in lowered:
            payload[name] = password
        else:
            payload[name] = tag.get("value", "")
    return payload


def _parse_role_value(text):
    """Parse a Role attribute value into (role_arn, principal_arn).

    The value is a comma-separated pair of ARNs in either order:
    ``arn:aws:iam::ACCT:saml-provider/P,arn:aws:iam::ACCT:role/R``.
    Returns None if the value cannot be parsed.
    """
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 2:
        return None

    role_arn = next((p for p in parts if ":role/" in p), None)
    principal_arn = next((p for p in parts if ":saml-provider/" in p), None)
    if not role_arn or not principal_arn:
        return None
    return role_arn, principal_arn


def parse_saml_assertion(assertion):
    """Decode a base64 SAML assertion.

    Returns:
        principals (dict): Role -> saml-provider principal ARN, in assertion order.
        session_duration (int): requested session duration in seconds.
    """
    xml = base64.b64decode(assertion)
    root = ET.fromstring(xml)

    principals = {}
    session_duration = DEFAULT_SESSION_DURATION

    for attr in root.iter(f"{SAML_NS}Attribute"):
        name = attr.get("Name", "")
        if name == SAML_ROLE_ATTRIBUTE:
            for value_el in attr.iter(f"{SAML_NS}AttributeValue"):
                pair = _parse_role_value((value_el.text or "").strip())
                if pair:
                    principals[Role(pair[0])] = pair[1]
        elif name == SAML_SESSION_ATTRIBUTE:
            for value_el in attr.iter(f"{SAML_NS}AttributeValue"):
                try:
                    session_duration = int((value_el.text or "").strip())
                except ValueError:
                    pass

    return principals, session_duration


class SAMLFederator:
    """Log in to a SAML identity provider and exchange the assertion with STS.

    Any object exposing ``login()``, ``get_roles()`` and ``assume_role(role)``
    can stand in for this class in ``federate``.
    """

    def __init__(self, username, password, identity_url, region=STS_REGION, log=LOG):
        parsed = urlparse(identity_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InitFailure(f"Invalid identity provider URL: {identity_url!r}")

        self.username = username
        self.password = password
        self.identity_url = identity_url
        self.region = region
        self.log = log
        self.assertion = None
        self.session_duration = DEFAULT_SESSION_DURATION
        self._principals = {}
        self._http = requests.Session()

    def login(self):
        """Authenticate against the identity provider and keep the SAML assertion."""
        self.log.debug("Requesting identity provider page: %s", self.identity_url)
        try:
            resp = self._http.get(self.identity_url, allow_redirects=True, timeout=HTTP_TIMEOUT)
            resp.raise_for_status()

            assertion = _find_saml_response(resp.text)
            if not assertion:
                form = _find_login_form(resp.text)
                if form is None:
                    raise AuthFailure("No login form found at the identity provider URL.")
                action = urljoin(resp.url, form.get("action") or "")
                payload = _build_login_payload(form, self.username, self.password)

                self.log.debug("Submitting login form to: %s", action)
                resp = self._http.post(action, data=payload, allow_redirects=True, timeout=HTTP_TIMEOUT)
                resp.raise_for_status()
                assertion = _find_saml_response(resp.text)
        except requests.RequestException as exc:
            raise AuthFailure(f"Request to identity provider failed: {exc}") from exc

        if not assertion:
            raise AuthFailure(
                "Response did not contain a SAML assertion. Check your username and password."
            )
        self.log.debug("Received SAML assertion")
        self.assertion = assertion

    def get_roles(self):
        """Return the roles authorized by the assertion, in assertion order."""
        if self.assertion is None:
            raise RetrievalFailure("Not logged in.")
        try:
            principals, duration = parse_saml_assertion(self.assertion)
        except (binascii.Error, ValueError, ET.ParseError) as exc:
            raise RetrievalFailure(f"Unable to parse SAML assertion: {exc}") from exc

        self._principals = principals
        self.session_duration = duration
        self.log.debug("Assertion authorizes %d role(s)", len(principals))
        return list(principals)

    def assume_role(self, role):
        """Call STS AssumeRoleWithSAML for *role* and return Credentials."""
        principal = self._principals.get(role)
        if principal is None:
            raise AssumeFailure(f"Role '{role}' is not authorized by the SAML assertion.")

        self.log.debug("Attempting to AssumeRoleWithSAML: %s", role)
        try:
            # ProfileNotFound for a missing AWS_PROFILE is raised here.
            sts = boto3.session.Session(region_name=self.region).client("sts")
            response = sts.assume_role_with_saml(
                RoleArn=str(role),
                PrincipalArn=principal,
                SAMLAssertion=self.assertion,
                DurationSeconds=min(self.session_duration, MAX_SESSION_DURATION),
            )
        except (ClientError, BotoCoreError) as exc:
            raise AssumeFailure(str(exc)) from exc

        creds = response["Credentials"]
        return Credentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds["Expiration"],
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def federate(
    config_path,
    account_name,
    profile,
    credentials_path,
    session_factory=None,
    prompt=input,
    read_password=None,
    log=LOG,
):
    """Run the whole federation flow and return the Credentials written to *profile*.

    *session_factory* is called as ``session_factory(username, password,
    identity_url)`` and defaults to SAMLFederator; *read_password* defaults to
    getpass.getpass.
    """
    if session_factory is None:
        session_factory = SAMLFederator
    if read_password is None:
        read_password = getpass.getpass

    config = load_config(config_path, log=log)

    section = match_account(config, account_name)
    if section is None:
        raise MissingAccount(
            f"Could not find configuration matching provided account name '{account_name}'"
        )
    account = account_config(section)

    username = account.username
    if username is None:
        try:
            username = prompt("Enter Username: ").strip()
        except EOFError:
            raise AuthFailure("No username provided.") from None
    password = account.password
    if password is None:
        try:
            password = read_password("Enter Password: ")
        except EOFError:
            raise AuthFailure("No password provided.") from None

    session = session_factory(username, password, account.identity_url)
    session.login()

    try:
        roles = session.get_roles()
    except RetrievalFailure as exc:
        log.error("Could not retrieve roles: %s", exc)
        roles = []

    role = resolve_role(roles, account, load_account_map(config), prompt=prompt, log=log)
    log.debug("User has selected ARN: %s", role)

    credentials = session.assume_role(role)
    write_credentials(credentials_path, profile, credentials, log=log)
    return credentials


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="aws-federator",
        description="Obtain temporary AWS credentials through SAML federation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  aws-federator                         Use the 'default' account from ~/.aws/federatedcli
  aws-federator --account prod          Use the 'prod' account configuration
  aws-federator --acct prod \\
                --profile prod          Write credentials to the 'prod' profile
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s version {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Print debug messages to stderr")
    parser.add_argument("--path", default=DEFAULT_CONFIG_PATH,
                        help="Path to aws-federator configuration (default: ~/.aws/federatedcli)")
    parser.add_argument("--account", "--acct", dest="account", default=DEFAULT_ACCOUNT,
                        help=f"AWS account configuration to use (default: {DEFAULT_ACCOUNT})")
    parser.add_argument("--profile", default=DEFAULT_PROFILE,
                        help=f"Credential profile the temporary credentials are written to "
                             f"(default: {DEFAULT_PROFILE})")
    parser.add_argument("--credentials-file",
                        help="AWS credentials file (default: $AWS_SHARED_CREDENTIALS_FILE "
                             "or ~/.aws/credentials)")
    return parser


def _setup_logging(verbose):
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(logging.Formatter(fmt="%(levelname)s: %(message)s"))
    LOG.handlers[:] = [handler]
    LOG.propagate = False
    LOG.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return LOG


def main(argv=None):
    args = _build_parser().parse_args(argv)
    log = _setup_logging(args.verbose)

    credentials_path = args.credentials_file or get_credentials_path()

    try:
        credentials = federate(
            os.path.expanduser(args.path),
            args.account or DEFAULT_ACCOUNT,
            args.profile,
            os.path.expanduser(credentials_path),
            log=log,
        )
    except FederatorError as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)

    print("-------------------------------------------------------")
    print()
    print(f"Temporary credentials successfully saved to credential profile '{args.profile}'.")
    print(f"You can use these credentials with the AWS CLI by including the "
          f"'--profile {args.profile}' flag.")
    print(f"They will remain valid until {credentials.expiration}")


if __name__ == "__main__":
    main()
