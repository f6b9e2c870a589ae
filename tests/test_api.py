"""
HTTP surface tests: routes, status codes and the error body
"""
from helpers import window


def create_class(client, name="Distributed Systems", **extra):
    response = client.post("/classes", json={"name": name, **extra})
    assert response.status_code == 201
    return response.json()["id"]


def enroll(client, class_id, n=1):
    response = client.post(
        f"/classes/{class_id}/students",
        json={"name": f"Student {n}", "email": f"student{n}@university.edu", "student_number": f"S{n:04d}"},
    )
    assert response.status_code == 201
    return response.json()["student_id"]


def create_opportunity(client, class_id, status="open", **extra):
    opens_at, closes_at, event_date = window(status)
    response = client.post(
        f"/classes/{class_id}/opportunities",
        json={
            "title": "Dinner with the professor",
            "opens_at": opens_at.isoformat(),
            "closes_at": closes_at.isoformat(),
            "event_date": event_date.isoformat(),
            **extra,
        },
    )
    assert response.status_code == 201
    return response.json()


def student_status(client, class_id, student_id):
    response = client.get(f"/classes/{class_id}/students/{student_id}")
    assert response.status_code == 200
    return response.json()


class TestServiceEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestBiddingScenario:
    """Enroll, bid, select, reset and delete, all over HTTP"""

    def test_full_lifecycle(self, client):
        class_id = create_class(client)
        student_id = enroll(client, class_id)
        opportunity = create_opportunity(client, class_id)
        opportunity_id = opportunity["id"]
        assert opportunity["status"] == "open"
        assert opportunity["capacity"] == 7
        assert opportunity["bid_count"] == 0

        response = client.post(f"/opportunities/{opportunity_id}/bids", json={"student_id": student_id})
        assert response.status_code == 201
        assert isinstance(response.json()["bid_id"], int)
        status = student_status(client, class_id, student_id)
        assert status["tokens_remaining"] == 0
        assert status["has_bid"] is True
        history = client.get("/token-history", params={"student_id": student_id}).json()
        assert [(e["type"], e["amount"]) for e in history] == [("bid", -1)]

        response = client.post(f"/opportunities/{opportunity_id}/bids", json={"student_id": student_id})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_BID"
        assert student_status(client, class_id, student_id)["tokens_remaining"] == 0
        assert len(client.get(f"/opportunities/{opportunity_id}/bids").json()) == 1

        response = client.post(
            f"/opportunities/{opportunity_id}/selection",
            json={"selected_ids": [student_id], "all_bidder_ids": [student_id]},
        )
        assert response.json() == {"updated_winners": 1, "updated_losers": 0}
        assert student_status(client, class_id, student_id)["bidding_result"] == "won"

        response = client.delete(f"/opportunities/{opportunity_id}/selection")
        assert response.json() == {"reset_count": 1}
        assert student_status(client, class_id, student_id)["bidding_result"] == "pending"
        assert client.get(f"/opportunities/{opportunity_id}/bids").json()[0]["is_winner"] is False

        response = client.delete(f"/opportunities/{opportunity_id}")
        assert response.json() == {"refunded_count": 1}
        status = student_status(client, class_id, student_id)
        assert status["tokens_remaining"] == 1
        assert status["bidding_result"] == "pending"
        assert status["has_bid"] is False
        assert client.get(f"/opportunities/{opportunity_id}").status_code == 404
        history = client.get("/token-history", params={"student_id": student_id}).json()
        assert ("refund", 1) in [(e["type"], e["amount"]) for e in history]

    def test_withdraw_and_auto_select(self, client):
        class_id = create_class(client)
        a, b = enroll(client, class_id, 1), enroll(client, class_id, 2)
        opportunity_id = create_opportunity(client, class_id)["id"]
        for student_id in (a, b):
            client.post(f"/opportunities/{opportunity_id}/bids", json={"student_id": student_id})

        response = client.delete(f"/opportunities/{opportunity_id}/bids/{b}")
        assert response.status_code == 200
        assert response.json() == {}
        assert student_status(client, class_id, b)["tokens_remaining"] == 1

        response = client.post(f"/opportunities/{opportunity_id}/auto-select")
        assert response.json() == {"selected_count": 1}
        assert student_status(client, class_id, a)["tokens_remaining"] == 1
        bids = client.get(f"/opportunities/{opportunity_id}/bids").json()
        assert [(bid["student_id"], bid["bid_status"], bid["bid_amount"]) for bid in bids] == [
            (a, "auto_selected", 0)
        ]

        response = client.delete(f"/opportunities/{opportunity_id}/bids/{a}")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CANNOT_WITHDRAW_WINNER"


class TestClassEndpoints:
    def test_roster_statistics_and_topup(self, client):
        class_id = create_class(client, default_capacity=2)
        a, b = enroll(client, class_id, 1), enroll(client, class_id, 2)
        opportunity = create_opportunity(client, class_id)
        assert opportunity["capacity"] == 2
        client.post(f"/opportunities/{opportunity['id']}/bids", json={"student_id": a})

        roster = client.get(f"/classes/{class_id}/students").json()
        assert [(row["student_id"], row["has_bid"]) for row in roster] == [(a, True), (b, False)]

        stats = client.get(f"/classes/{class_id}/statistics").json()
        assert stats["total_students"] == 2
        assert stats["students_who_bid"] == 1
        assert stats["opportunities"][0]["bid_count"] == 1

        response = client.post(f"/classes/{class_id}/students/{a}/topup")
        assert response.status_code == 200
        assert response.json()["tokens_remaining"] == 1

    def test_remove_student(self, client):
        class_id = create_class(client)
        a, b = enroll(client, class_id, 1), enroll(client, class_id, 2)
        opportunity_id = create_opportunity(client, class_id)["id"]
        client.post(f"/opportunities/{opportunity_id}/bids", json={"student_id": a})

        response = client.delete(f"/classes/{class_id}/students/{a}")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "HAS_EXISTING_BID"

        response = client.delete(f"/classes/{class_id}/students/{b}")
        assert response.json() == {"user_deleted": True, "enrollment_deleted": True}

    def test_delete_class(self, client):
        class_id = create_class(client)
        student_id = enroll(client, class_id)
        opportunity_id = create_opportunity(client, class_id)["id"]
        client.post(f"/opportunities/{opportunity_id}/bids", json={"student_id": student_id})

        response = client.delete(f"/classes/{class_id}")

        assert response.json() == {
            "deleted_counts": {"opportunities": 1, "bids": 1, "enrollments": 1, "token_history": 1}
        }
        assert client.get(f"/classes/{class_id}/students").status_code == 404

    def test_enrolling_twice(self, client):
        class_id = create_class(client)
        enroll(client, class_id)

        response = client.post(
            f"/classes/{class_id}/students",
            json={"name": "Again", "email": "STUDENT1@university.edu", "student_number": "S0001"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ALREADY_ENROLLED"


class TestErrorBody:
    """Core failures come back as {"error": {code, message, details, retryable}}"""

    def test_not_found_shape(self, client):
        response = client.get("/opportunities/9999")

        assert response.status_code == 404
        body = response.json()["error"]
        assert body["code"] == "OPPORTUNITY_NOT_FOUND"
        assert body["retryable"] is False
        assert body["details"] == {"resource_type": "Opportunity", "resource_id": 9999}
        assert body["message"]

    def test_not_enrolled(self, client):
        class_id = create_class(client)
        other = create_class(client, "Other")
        student_id = enroll(client, other)
        opportunity_id = create_opportunity(client, class_id)["id"]

        response = client.post(f"/opportunities/{opportunity_id}/bids", json={"student_id": student_id})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_ENROLLED"

    def test_closed_opportunity(self, client):
        class_id = create_class(client)
        student_id = enroll(client, class_id)
        opportunity = create_opportunity(client, class_id, status="closed")
        assert opportunity["status"] == "closed"

        response = client.post(f"/opportunities/{opportunity['id']}/bids", json={"student_id": student_id})

        assert response.status_code == 409
        assert response.json()["error"]["details"]["status"] == "closed"

    def test_invalid_window(self, client):
        class_id = create_class(client)
        opens_at, closes_at, event_date = window("open")

        response = client.post(
            f"/classes/{class_id}/opportunities",
            json={
                "title": "Backwards",
                "opens_at": closes_at.isoformat(),
                "closes_at": opens_at.isoformat(),
                "event_date": event_date.isoformat(),
            },
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_update_opportunity(self, client):
        class_id = create_class(client)
        opportunity_id = create_opportunity(client, class_id, status="upcoming")["id"]

        response = client.patch(f"/opportunities/{opportunity_id}", json={"title": "Brunch", "capacity": 3})

        assert response.status_code == 200
        assert response.json()["title"] == "Brunch"
        assert response.json()["capacity"] == 3
        assert response.json()["status"] == "upcoming"

    def test_lock_contention_is_reported_as_retryable(self, client, monkeypatch):
        from sqlalchemy.exc import OperationalError

        from bidding_service import opportunities

        calls = []

        def contended(db, name, default_capacity):
            calls.append(name)
            raise OperationalError("INSERT INTO classes", {}, Exception("database is locked"))

        monkeypatch.setattr(opportunities, "create_class", contended)

        response = client.post("/classes", json={"name": "Busy"})

        assert response.status_code == 409
        body = response.json()["error"]
        assert body["code"] == "CONCURRENCY_CONFLICT"
        assert body["retryable"] is True
        assert len(calls) == 3

    def test_error_body_is_documented(self, client):
        schema = client.get("/openapi.json").json()

        assert "ErrorResponse" in schema["components"]["schemas"]
        responses = schema["paths"]["/opportunities/{opportunity_id}/bids"]["post"]["responses"]
        assert responses["409"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")


class TestClassDirectory:
    """Finding, renaming and listing classes and a student's enrollments"""

    def test_list_and_get_classes(self, client):
        first = create_class(client, "Algorithms")
        second = create_class(client, "Compilers", default_capacity=3)

        listed = client.get("/classes").json()
        assert [(c["id"], c["name"]) for c in listed] == [(first, "Algorithms"), (second, "Compilers")]

        response = client.get(f"/classes/{second}")
        assert response.status_code == 200
        assert response.json()["default_capacity"] == 3

        response = client.get("/classes/999")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CLASS_NOT_FOUND"

    def test_update_class(self, client):
        class_id = create_class(client, "Draft")

        response = client.patch(f"/classes/{class_id}", json={"name": "Operating Systems", "default_capacity": 4})

        assert response.status_code == 200
        assert response.json()["name"] == "Operating Systems"
        assert response.json()["default_capacity"] == 4
        assert create_opportunity(client, class_id)["capacity"] == 4

    def test_partial_update_keeps_other_fields(self, client):
        class_id = create_class(client, "Networks", default_capacity=5)

        response = client.patch(f"/classes/{class_id}", json={"name": "Computer Networks"})

        assert response.json()["default_capacity"] == 5

    def test_update_unknown_class(self, client):
        assert client.patch("/classes/404", json={"name": "Nope"}).status_code == 404

    def test_student_enrollments(self, client):
        first = create_class(client, "Algorithms")
        second = create_class(client, "Compilers")
        student_id = enroll(client, first)
        assert enroll(client, second) == student_id

        enrolled = client.get(f"/students/{student_id}/enrollments").json()

        assert [e["class_id"] for e in enrolled] == [first, second]
        assert all(e["tokens_remaining"] == 1 for e in enrolled)
        assert client.get("/students/999/enrollments").status_code == 404
