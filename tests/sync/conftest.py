from tests.identity.conftest import crm_contact_factory  # noqa: F401
