import uuid

from feedbackhub.models import Customer, Feedback
from feedbackhub.services import CustomerService


def _create(client, tenant_auth, **payload):
    res = client.post("/api/customers/", json=payload, headers=tenant_auth.header("operator"))
    assert res.status_code == 201, res.text
    return res.json()


def test_create_customer_normalizes_email(client, tenant_auth):
    customer = _create(client, tenant_auth, email="Jane@Example.com", name=" Jane ", company="Acme")

    assert customer["email"] == "jane@example.com"
    assert customer["name"] == "Jane"
    assert customer["source"] == "manual"
    assert customer["first_seen_at"]


def test_create_customer_validation(client, tenant_auth):
    headers = tenant_auth.header("operator")

    empty = client.post("/api/customers/", json={"company": "Acme"}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "REQUIRED_FIELD_MISSING"

    _create(client, tenant_auth, email="jane@example.com")
    duplicate = client.post("/api/customers/", json={"email": "JANE@example.com"}, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CUSTOMER_ALREADY_EXISTS"


def test_list_customers_with_filters_and_pagination(client, tenant_auth):
    _create(client, tenant_auth, email="a@acme.com", name="Alice", company="Acme")
    _create(client, tenant_auth, email="b@globex.com", name="Bob", company="Globex")
    _create(client, tenant_auth, name="Carol", company="Acme")
    headers = tenant_auth.header("viewer")

    everything = client.get("/api/customers/", params={"sort_by": "name", "sort_order": "asc"}, headers=headers)
    body = everything.json()
    assert body["total"] == 3
    assert [c["name"] for c in body["items"]] == ["Alice", "Bob", "Carol"]

    acme = client.get("/api/customers/", params={"companies": ["Acme"]}, headers=headers).json()
    assert {c["name"] for c in acme["items"]} == {"Alice", "Carol"}

    without_email = client.get("/api/customers/", params={"has_email": "false"}, headers=headers).json()
    assert [c["name"] for c in without_email["items"]] == ["Carol"]

    search = client.get("/api/customers/", params={"search": "globex"}, headers=headers).json()
    assert [c["name"] for c in search["items"]] == ["Bob"]

    paged = client.get(
        "/api/customers/",
        params={"limit": 2, "page": 2, "sort_by": "name", "sort_order": "asc"},
        headers=headers,
    ).json()
    assert paged["total_pages"] == 2
    assert [c["name"] for c in paged["items"]] == ["Carol"]


def test_list_customers_rejects_unknown_sort_field(client, tenant_auth):
    res = client.get(
        "/api/customers/", params={"sort_by": "password"}, headers=tenant_auth.header("viewer")
    )

    assert res.status_code == 400
    assert res.json()["error"]["code"] == "INVALID_SORT_FIELD"


def test_get_customer_includes_recent_feedback(client, tenant_auth):
    customer = _create(client, tenant_auth, email="jane@example.com", name="Jane")
    with tenant_auth.session_factory.begin() as session:
        for idx in range(7):
            session.add(
                Feedback(
                    organization_id=tenant_auth.organization_id,
                    title=f"Feedback {idx}",
                    source="manual",
                    customer_id=uuid.UUID(customer["id"]),
                )
            )

    res = client.get(f"/api/customers/{customer['id']}", headers=tenant_auth.header("viewer"))

    assert res.status_code == 200
    body = res.json()
    assert body["feedback_count"] == 7
    assert len(body["recent_feedback"]) == 5


def test_get_customer_from_other_organization_is_not_found(client, tenant_auth):
    other = tenant_auth.create_tenant("Other", "other")
    with tenant_auth.session_factory.begin() as session:
        foreign = Customer(organization_id=other, name="Foreign")
        session.add(foreign)
        session.flush()
        foreign_id = foreign.id

    res = client.get(f"/api/customers/{foreign_id}", headers=tenant_auth.header("admin"))

    assert res.status_code == 404
    assert res.json()["error"]["code"] == "CUSTOMER_NOT_FOUND"


def test_update_customer(client, tenant_auth):
    customer = _create(client, tenant_auth, email="jane@example.com", name="Jane")
    _create(client, tenant_auth, email="john@example.com", name="John")

    res = client.put(
        f"/api/customers/{customer['id']}",
        json={"company": "Initech", "metadata": {"plan": "pro"}},
        headers=tenant_auth.header("operator"),
    )
    assert res.status_code == 200
    assert res.json()["company"] == "Initech"
    assert res.json()["metadata"] == {"plan": "pro"}

    conflict = client.put(
        f"/api/customers/{customer['id']}",
        json={"email": "john@example.com"},
        headers=tenant_auth.header("operator"),
    )
    assert conflict.status_code == 409


def test_delete_customer_with_feedback_is_refused(client, tenant_auth):
    customer = _create(client, tenant_auth, email="jane@example.com")
    with tenant_auth.session_factory.begin() as session:
        session.add(
            Feedback(
                organization_id=tenant_auth.organization_id,
                title="Linked",
                source="manual",
                customer_id=uuid.UUID(customer["id"]),
            )
        )

    operator = client.delete(f"/api/customers/{customer['id']}", headers=tenant_auth.header("operator"))
    assert operator.status_code == 403

    res = client.delete(f"/api/customers/{customer['id']}", headers=tenant_auth.header("admin"))
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "CUSTOMER_DELETE_FAILED"
    assert res.json()["error"]["metadata"] == {"feedbackCount": 1}


def test_delete_customer(client, tenant_auth):
    customer = _create(client, tenant_auth, name="Lonely")

    res = client.delete(f"/api/customers/{customer['id']}", headers=tenant_auth.header("admin"))
    assert res.status_code == 204

    missing = client.get(f"/api/customers/{customer['id']}", headers=tenant_auth.header("admin"))
    assert missing.status_code == 404


def test_merge_customers(client, tenant_auth):
    primary = _create(client, tenant_auth, name="Jane Doe", company="Acme")
    duplicate = _create(client, tenant_auth, email="jane@acme.com", name="J. Doe", company="Acme")
    with tenant_auth.session_factory.begin() as session:
        session.add(
            Feedback(
                organization_id=tenant_auth.organization_id,
                title="From the duplicate",
                source="manual",
                customer_id=uuid.UUID(duplicate["id"]),
            )
        )

    res = client.post(
        f"/api/customers/{primary['id']}/merge",
        json={"duplicate_id": duplicate["id"]},
        headers=tenant_auth.header("admin"),
    )

    assert res.status_code == 200
    merged = res.json()
    assert merged["email"] == "jane@acme.com"
    assert merged["metadata"]["mergedFrom"] == [duplicate["id"]]

    detail = client.get(f"/api/customers/{primary['id']}", headers=tenant_auth.header("viewer")).json()
    assert detail["feedback_count"] == 1

    gone = client.get(f"/api/customers/{duplicate['id']}", headers=tenant_auth.header("viewer"))
    assert gone.status_code == 404


def test_merge_with_self_is_rejected(client, tenant_auth):
    customer = _create(client, tenant_auth, name="Solo")

    res = client.post(
        f"/api/customers/{customer['id']}/merge",
        json={"duplicate_id": customer["id"]},
        headers=tenant_auth.header("admin"),
    )

    assert res.status_code == 400


def test_duplicates_and_stats(client, tenant_auth):
    _create(client, tenant_auth, email="jane@acme.com", name="Jane", company="Acme")
    _create(client, tenant_auth, email="jane@acme.io", name="Jane Doe", company="acme")
    _create(client, tenant_auth, name="Bob", company="Globex")
    headers = tenant_auth.header("viewer")

    duplicates = client.get("/api/customers/duplicates", headers=headers).json()
    assert len(duplicates) == 1
    group = duplicates[0]
    assert group["reason"] == "email_company"
    assert group["key"] == "jane"
    assert len(group["customers"]) == 2

    stats = client.get("/api/customers/stats", headers=headers).json()
    assert stats["total"] == 3
    assert stats["with_email"] == 2
    assert stats["without_email"] == 1
    assert stats["recent_activity"] == 3
    assert stats["by_integration"] == {"manual": 3}


def test_identify_or_create_matches_existing_identity(tenant_auth):
    org_id = tenant_auth.organization_id
    with tenant_auth.session_factory.begin() as session:
        service = CustomerService(session)

        created, was_created = service.identify_or_create(
            org_id, email="Pat@Example.com", name="Pat", source="SLACK", external_id="U1"
        )
        assert was_created

        by_email, was_created = service.identify_or_create(org_id, email="pat@example.com")
        assert not was_created
        assert by_email.id == created.id

        by_external, _ = service.identify_or_create(org_id, source="SLACK", external_id="U1")
        assert by_external.id == created.id

        by_name, _ = service.identify_or_create(org_id, name="Sam", company="Initech")
        again, was_created = service.identify_or_create(org_id, name="sam", company="INITECH")
        assert not was_created
        assert again.id == by_name.id

        filled, _ = service.identify_or_create(org_id, email="pat@example.com", company="Acme")
        assert filled.company == "Acme"
