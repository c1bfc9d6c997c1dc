from unittest import mock

import pytest
import requests

from instantwin.oracle import OracleClient, OracleError, create_oracle_app
from instantwin.signature import SignatureVerifier
from instantwin.ticket_types import compute_ticket_id

from conftest import BUYER

TICKET_ID = compute_ticket_id(1, BUYER, 5)


def test_oracle_signs_deterministically(oracle):
    first = oracle.sign(TICKET_ID)
    assert oracle.sign(TICKET_ID.upper().replace("0X", "0x")) == first
    assert oracle.issued == {TICKET_ID: first.to_hex()}
    assert SignatureVerifier(oracle.public_key).verify(TICKET_ID, first) == first


def test_oracle_rejects_bad_ticket_id(oracle):
    with pytest.raises(ValueError):
        oracle.sign("0x1234")


def test_oracle_app(oracle):
    client = create_oracle_app(oracle).test_client()

    status = client.get("/status").get_json()
    assert status["address"] == oracle.address
    assert status["public_key"] == oracle.public_key

    resp = client.post("/sign", json={"ticket_id": TICKET_ID})
    assert resp.status_code == 200
    assert resp.get_json()["signature"] == oracle.sign(TICKET_ID).to_hex()

    assert client.post("/sign", json={}).status_code == 400
    assert client.post("/sign", json={"ticket_id": "0xzz"}).status_code == 400


def _response(status_code, payload):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


def test_oracle_client_sign():
    client = OracleClient("http://oracle:8091/")
    with mock.patch("instantwin.oracle.requests.request",
                    return_value=_response(200, {"signature": "0xabc"})) as request:
        assert client.sign(TICKET_ID) == "0xabc"
    request.assert_called_once_with("POST", "http://oracle:8091/sign",
                                    json={"ticket_id": TICKET_ID}, timeout=30)


def test_oracle_client_errors():
    client = OracleClient("http://oracle:8091")
    with mock.patch("instantwin.oracle.requests.request",
                    side_effect=requests.exceptions.ConnectionError("refused")):
        with pytest.raises(OracleError) as excinfo:
            client.sign(TICKET_ID)
    assert excinfo.value.code == -1

    with mock.patch("instantwin.oracle.requests.request",
                    return_value=_response(400, {"message": "bad ticket"})):
        with pytest.raises(OracleError) as excinfo:
            client.status()
    assert excinfo.value.code == 400
    assert excinfo.value.message == "bad ticket"
