import pytest


@pytest.fixture(autouse=True)
def _enforced_api_server(fake_vault, enforced_session):
    pass
