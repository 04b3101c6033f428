import base64
import datetime
import logging

import pytest

import aws_federator
from aws_federator import Credentials, Role


ADMIN = Role("arn:aws:iam::111111111111:role/Admin")
READONLY = Role("arn:aws:iam::111111111111:role/ReadOnly")
DEV = Role("arn:aws:iam::222222222222:role/Developer")

EXPIRATION = datetime.datetime(2030, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)


def saml_assertion(pairs, duration=None):
    """Build a base64 SAML assertion carrying Role attribute values."""
    values = "".join(
        f"<saml2:AttributeValue>{value}</saml2:AttributeValue>" for value in pairs
    )
    session = ""
    if duration is not None:
        session = (
            f'<saml2:Attribute Name="{aws_federator.SAML_SESSION_ATTRIBUTE}">'
            f"<saml2:AttributeValue>{duration}</saml2:AttributeValue>"
            "</saml2:Attribute>"
        )
    xml = (
        '<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml2="urn:oasis:names:tc:SAML:2.0:assertion">'
        "<saml2:Assertion><saml2:AttributeStatement>"
        f'<saml2:Attribute Name="{aws_federator.SAML_ROLE_ATTRIBUTE}">{values}</saml2:Attribute>'
        f"{session}"
        "</saml2:AttributeStatement></saml2:Assertion>"
        "</samlp:Response>"
    )
    return base64.b64encode(xml.encode()).decode()


class FakeSession:
    """Scripted stand-in for SAMLFederator."""

    instances = []

    def __init__(self, username, password, identity_url, roles=(), fail_roles=False):
        self.username = username
        self.password = password
        self.identity_url = identity_url
        self.roles = list(roles)
        self.fail_roles = fail_roles
        self.logged_in = False
        self.assumed = None
        FakeSession.instances.append(self)

    def login(self):
        self.logged_in = True

    def get_roles(self):
        if self.fail_roles:
            raise aws_federator.RetrievalFailure("boom")
        return list(self.roles)

    def assume_role(self, role):
        self.assumed = role
        return Credentials(
            access_key_id="ASIAEXAMPLE",
            secret_access_key="secret",
            session_token="token",
            expiration=EXPIRATION,
        )


@pytest.fixture
def fake_session_factory():
    FakeSession.instances = []

    def make(roles=(), fail_roles=False):
        def factory(username, password, identity_url):
            return FakeSession(username, password, identity_url, roles=roles, fail_roles=fail_roles)

        return factory

    return make


@pytest.fixture
def write_file(tmp_path):
    def write(name, content):
        path = tmp_path / name
        path.write_text(content)
        return str(path)

    return write


@pytest.fixture
def credentials():
    return Credentials(
        access_key_id="ASIANEWKEY",
        secret_access_key="newsecret",
        session_token="newtoken",
        expiration=EXPIRATION,
    )


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    aws_federator.LOG.handlers[:] = []
    aws_federator.LOG.propagate = True
    aws_federator.LOG.setLevel(logging.NOTSET)
