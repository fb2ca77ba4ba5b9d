import json
from unittest.mock import Mock

import pytest
import requests

from telegram_proxy import ProxyConfig, create_app

TOKEN = "123456:TEST-TOKEN"


def make_response(status, payload, url="https://api.telegram.org/bot/getMe"):
    """Build a real requests.Response carrying a JSON body."""
    resp = requests.Response()
    resp.status_code = status
    resp._content = json.dumps(payload).encode()
    resp.headers["Content-Type"] = "application/json"
    resp.url = url
    resp.encoding = "utf-8"
    return resp


@pytest.fixture
def session():
    mock_session = Mock(spec=requests.Session)
    mock_session.get.return_value = make_response(200, {"ok": True, "result": {"id": 1}})
    mock_session.post.return_value = make_response(200, {"ok": True, "result": {"message_id": 7}})
    return mock_session


@pytest.fixture
def config(tmp_path):
    return ProxyConfig(bot_token=TOKEN, default_chat_id="123", upload_dir=str(tmp_path))


@pytest.fixture
def client(config, session):
    app = create_app(config, session=session)
    app.testing = True
    return app.test_client()


@pytest.fixture
def upstream_response():
    return make_response


@pytest.fixture
def token():
    return TOKEN
