from sqlmodel import Session

from ceremony.models import Organization
from ceremony.sealing import seal_envelope

from conftest import ADMIN_HEADERS, ORG_HEADERS, ORG_TOKEN, PNG_DATA_URL, make_pdf


def create_org(test_engine):
    with Session(test_engine) as session:
        org = Organization(name="Acme Realty", access_token=ORG_TOKEN)
        session.add(org)
        session.commit()
        session.refresh(org)
        return org.id


def create_envelope(client, signing_order="sequential"):
    payload = {
        "subject": "Purchase agreement",
        "message": "Please review the attached agreement.",
        "signing_order": signing_order,
        "requester_name": "Riley Agent",
        "requester_email": "agent@example.com",
        "signers": [
            {"client_id": "ana", "name": "Ana Buyer", "email": "ana@example.com"},
            {"client_id": "ben", "name": "Ben Buyer", "email": "ben@example.com"},
        ],
        "fields": [
            {"page": 1, "x": 10, "y": 70, "width": 30, "height": 5, "type": "signature", "signer_key": "ana"},
            {"page": 1, "x": 10, "y": 80, "width": 30, "height": 5, "type": "signature", "signer_key": "ben"},
            {"page": 2, "x": 10, "y": 10, "width": 30, "height": 4, "type": "text", "signer_key": "ana", "label": "Full name"},
        ],
    }
    response = client.post("/api/envelopes", json=payload, headers=ORG_HEADERS)
    assert response.status_code == 200, response.text
    return response.json()


def upload_and_send(client, envelope_id):
    upload = client.post(
        f"/api/envelopes/{envelope_id}/documents",
        files={"file": ("agreement.pdf", make_pdf(2), "application/pdf")},
        headers=ORG_HEADERS,
    )
    assert upload.status_code == 200, upload.text
    assert upload.json()["page_count"] == 2
    sent = client.post(f"/api/envelopes/{envelope_id}/send", headers=ORG_HEADERS)
    assert sent.status_code == 200, sent.text
    return sent.json()


def links_by_email(client, envelope_id):
    response = client.get(f"/api/envelopes/{envelope_id}/signing-links", headers=ORG_HEADERS)
    assert response.status_code == 200
    return {link["email"]: link["url"].rsplit("/", 1)[-1] for link in response.json() if link["url"]}


def field_values(client, token, text=None):
    session_data = client.get(f"/api/sign/{token}").json()
    values = {}
    for field in session_data["fields"]:
        if not field["editable"]:
            continue
        values[str(field["id"])] = PNG_DATA_URL if field["type"] == "signature" else text
    return values


def test_admin_routes_require_an_access_token(client):
    assert client.get("/api/envelopes").status_code == 401
    assert client.get("/api/envelopes", headers={"X-Access-Token": "nope"}).status_code == 403


def test_full_ceremony_over_http(client, test_engine, sealing_queue, sent_emails):
    create_org(test_engine)
    env = create_envelope(client)
    assert env["status"] == "draft"
    sent = upload_and_send(client, env["id"])
    assert sent["status"] == "sent"
    assert [m["to"] for m in sent_emails] == ["ana@example.com"]

    tokens = links_by_email(client, env["id"])
    ana, ben = tokens["ana@example.com"], tokens["ben@example.com"]

    ben_view = client.get(f"/api/sign/{ben}").json()
    assert ben_view["can_sign"] is False
    assert ben_view["waiting_on"] == ["Ana Buyer"]

    assert client.post(f"/api/sign/{ben}/consent", json={"accepted": True}).status_code == 200
    early = client.post(f"/api/sign/{ben}/complete", json={"values": field_values(client, ben)})
    assert early.status_code == 403
    assert early.json()["code"] == "not_your_turn"

    document = client.get(f"/api/sign/{ana}/document")
    assert document.status_code == 200
    assert document.headers["content-type"] == "application/pdf"

    unconsented = client.post(f"/api/sign/{ana}/complete", json={"values": field_values(client, ana, "Ana Buyer")})
    assert unconsented.status_code == 409

    assert client.post(f"/api/sign/{ana}/consent", json={"accepted": True}).status_code == 200
    missing = client.post(f"/api/sign/{ana}/complete", json={"values": {}})
    assert missing.status_code == 422
    assert missing.json()["problems"]

    done = client.post(f"/api/sign/{ana}/complete", json={"values": field_values(client, ana, "Ana Buyer")})
    assert done.status_code == 200, done.text
    assert done.json()["envelope_status"] == "in_progress"
    assert done.json()["sealing_triggered"] is False

    last = client.post(f"/api/sign/{ben}/complete", json={"values": field_values(client, ben)})
    assert last.status_code == 200, last.text
    assert last.json()["sealing_triggered"] is True
    assert sealing_queue == [env["id"]]

    not_yet = client.get(f"/api/sign/{ana}/signed-document")
    assert not_yet.status_code == 409

    with Session(test_engine) as session:
        seal_envelope(session, env["id"])

    sealed = client.get(f"/api/envelopes/{env['id']}/sealed-pdf", headers=ORG_HEADERS)
    assert sealed.status_code == 200
    assert sealed.content.startswith(b"%PDF")
    assert client.get(f"/api/envelopes/{env['id']}/certificate", headers=ORG_HEADERS).status_code == 200
    assert client.get(f"/api/sign/{ana}/signed-document").status_code == 200

    trail = client.get(f"/api/envelopes/{env['id']}/audit", headers=ADMIN_HEADERS).json()
    assert trail["chain_valid"] is True
    types = [e["event_type"] for e in trail["events"]]
    assert types.count("signed") == 2
    assert types[-1] == "completed"


def test_decline_over_http_voids_envelope(client, test_engine):
    create_org(test_engine)
    env = create_envelope(client, signing_order="parallel")
    upload_and_send(client, env["id"])
    tokens = links_by_email(client, env["id"])

    response = client.post(f"/api/sign/{tokens['ben@example.com']}/decline", json={"reason": "terms changed"})
    assert response.status_code == 200
    assert response.json()["envelope_status"] == "voided"

    again = client.get(f"/api/sign/{tokens['ana@example.com']}")
    assert again.status_code == 401
    assert again.json()["code"] == "invalid_token"

    detail = client.get(f"/api/envelopes/{env['id']}", headers=ORG_HEADERS).json()
    assert detail["void_reason"] == "Declined by Ben Buyer: terms changed"


def test_delegate_and_comment_over_http(client, test_engine, sent_emails):
    create_org(test_engine)
    env = create_envelope(client)
    upload_and_send(client, env["id"])
    ana = links_by_email(client, env["id"])["ana@example.com"]

    comment = client.post(f"/api/sign/{ana}/comments", json={"body": "Who should sign for the trust?"})
    assert comment.status_code == 200
    assert len(client.get(f"/api/sign/{ana}/comments").json()) == 1

    delegated = client.post(
        f"/api/sign/{ana}/delegate",
        json={"delegate_name": "Dana Trustee", "delegate_email": "dana@example.com"},
    )
    assert delegated.status_code == 200, delegated.text
    assert sent_emails[-1]["to"] == "dana@example.com"
    assert client.get(f"/api/sign/{ana}").status_code == 401

    links = links_by_email(client, env["id"])
    assert "dana@example.com" in links


def test_sender_operations_over_http(client, test_engine):
    create_org(test_engine)
    env = create_envelope(client)

    corrected = client.patch(f"/api/envelopes/{env['id']}/correct", json={"subject": "Revised agreement"}, headers=ORG_HEADERS)
    assert corrected.status_code == 200
    assert corrected.json()["subject"] == "Revised agreement"

    links = client.get(f"/api/envelopes/{env['id']}/signing-links", headers=ORG_HEADERS)
    assert links.status_code == 409

    upload_and_send(client, env["id"])
    ana_id = next(s["id"] for s in client.get(f"/api/envelopes/{env['id']}", headers=ORG_HEADERS).json()["signers"])
    resent = client.post(f"/api/envelopes/{env['id']}/signers/{ana_id}/resend", headers=ORG_HEADERS)
    assert resent.status_code == 200
    assert resent.json()["rotated"] is False

    moved = client.put(f"/api/envelopes/{env['id']}/transfer", json={"new_owner": "user:dana"}, headers=ORG_HEADERS)
    assert moved.json()["created_by"] == "user:dana"

    not_ready = client.post(f"/api/envelopes/{env['id']}/seal", headers=ORG_HEADERS)
    assert not_ready.status_code == 409

    voided = client.post(f"/api/envelopes/{env['id']}/void", json={"reason": "wrong property"}, headers=ORG_HEADERS)
    assert voided.json()["status"] == "voided"
    assert client.post(f"/api/envelopes/{env['id']}/void", json={"reason": "again"}, headers=ORG_HEADERS).status_code == 409

    listed = client.get("/api/envelopes?status=voided", headers=ADMIN_HEADERS).json()
    assert [e["id"] for e in listed] == [env["id"]]


def test_envelopes_are_scoped_to_their_organization(client, test_engine):
    create_org(test_engine)
    env = create_envelope(client)
    with Session(test_engine) as session:
        session.add(Organization(name="Other", access_token="other-token"))
        session.commit()
    response = client.get(f"/api/envelopes/{env['id']}", headers={"X-Access-Token": "other-token"})
    assert response.status_code == 404
    assert client.get(f"/api/envelopes/{env['id']}", headers=ADMIN_HEADERS).status_code == 200


def test_signer_ip_comes_from_the_proxy_headers(client, test_engine):
    create_org(test_engine)
    env = create_envelope(client)
    upload_and_send(client, env["id"])
    ana = links_by_email(client, env["id"])["ana@example.com"]

    client.post(
        f"/api/sign/{ana}/consent",
        json={"accepted": True},
        headers={"X-Forwarded-For": "  203.0.113.42 , 198.51.100.1", "X-Client-Geo": "Lyon, FR"},
    )

    trail = client.get(f"/api/envelopes/{env['id']}/audit", headers=ORG_HEADERS).json()
    consent = next(e for e in trail["events"] if e["event_type"] == "consent_given")
    assert consent["ip_address"] == "203.0.113.42"
    assert consent["geolocation"] == "Lyon, FR"
