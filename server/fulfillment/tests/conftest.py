import pytest

from fulfillment.auth import get_current_user
from fulfillment.main import app
from fulfillment.models import User


@pytest.fixture(autouse=True)
def override_auth(request):
    if request.node.get_closest_marker("real_auth"):
        yield
        return

    app.dependency_overrides[get_current_user] = lambda: User(
        id=1,
        email="admin@market.local",
        full_name="Test Admin",
        role="admin",
        is_active=True,
    )
    yield
    app.dependency_overrides.pop(get_current_user, None)
