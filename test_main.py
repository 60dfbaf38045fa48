from datetime import timedelta

from auth import get_current_user
from main import db, manager
from utils import utcnow

EVENT_BODY = {
    "title": "Test Event",
    "description": "A workshop",
    "startDate": "2030-05-01T10:00:00",
    "endDate": "2030-05-01T12:00:00",
    "location": "Lab 1",
    "category": "workshop",
    "capacity": 50,
}


# -------------------------------
# Auth
# -------------------------------
def test_register_user(client):
    response = client.post("/auth/register", json={
        "name": "Test User",
        "email": "Test@Example.com",
        "password": "password123",
        "department": "CSE",
        "year": 2,
    })
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["role"] == "student"
    assert body["user"]["email"] == "test@example.com"
    assert "password" not in body["user"]
    assert body["access_token"]


def test_register_rejects_unknown_and_admin_roles(client):
    base = {"name": "X", "email": "x@example.com", "password": "password123", "department": "CSE", "year": 1}
    assert client.post("/auth/register", json={**base, "role": "attendee"}).status_code == 400
    assert client.post("/auth/register", json={**base, "role": "admin"}).status_code == 403


def test_register_duplicate_email(client, student):
    response = client.post("/auth/register", json={
        "name": "Again", "email": student.email, "password": "password123", "department": "CSE", "year": 1,
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "User already exists"


def test_login_success(client, organizer):
    response = client.post("/auth/login", json={"email": "organizer@example.com", "password": "password123"})
    assert response.status_code == 200
    assert "access_token" in response.json()
    assert "refresh_token" in response.json()


def test_login_wrong_password(client, organizer):
    response = client.post("/auth/login", json={"email": "organizer@example.com", "password": "nope"})
    assert response.status_code == 401


def test_refresh_requires_refresh_token(client, organizer):
    tokens = client.post("/auth/login", json={"email": organizer.email, "password": "password123"}).json()
    ok = client.post("/auth/refresh", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert ok.status_code == 200
    assert ok.json()["data"]["access_token"]
    rejected = client.post("/auth/refresh", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert rejected.status_code == 401


def test_me_and_profile_update(client, student, login):
    headers = login(student)
    assert client.get("/auth/me", headers=headers).json()["data"]["email"] == student.email
    response = client.put("/auth/updateprofile", json={"department": "MECH"}, headers=headers)
    assert response.json()["data"]["department"] == "MECH"


def test_change_password(client, student, login):
    headers = login(student)
    bad = client.put("/auth/changepassword", json={"currentPassword": "wrong", "newPassword": "newpass123"}, headers=headers)
    assert bad.status_code == 401
    ok = client.put("/auth/changepassword", json={"currentPassword": "password123", "newPassword": "newpass123"}, headers=headers)
    assert ok.status_code == 200
    assert client.post("/auth/login", json={"email": student.email, "password": "newpass123"}).status_code == 200


def test_protected_route_without_token(client):
    assert client.post("/events/register/anything").status_code == 401



def test_current_user_resolves_synchronously(client, student):
    token = client.post("/auth/login", json={"email": student.email, "password": "password123"}).json()["access_token"]
    user = get_current_user(token)
    assert user["id"] == student.id
    assert user["registered_events"] == []

# -------------------------------
# Events
# -------------------------------
def test_create_event(client, organizer, login):
    response = client.post("/events", json=EVENT_BODY, headers=login(organizer))
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["organizer"] == organizer.id
    assert data["seatsLeft"] == 50


def test_student_cannot_create_event(client, student, login):
    assert client.post("/events", json=EVENT_BODY, headers=login(student)).status_code == 403


def test_invalid_capacity(client, organizer, login):
    response = client.post("/events", json={**EVENT_BODY, "capacity": 0}, headers=login(organizer))
    assert response.status_code == 400
    assert response.json()["detail"] == "Capacity must be positive"


def test_invalid_event_dates_and_price(client, organizer, login):
    headers = login(organizer)
    backwards = client.post("/events", json={**EVENT_BODY, "endDate": "2030-05-01T09:00:00"}, headers=headers)
    assert backwards.status_code == 400
    unpriced = client.post("/events", json={**EVENT_BODY, "isPaid": True, "price": 0}, headers=headers)
    assert unpriced.json()["detail"] == "Paid events must have a price greater than zero"
    bad_category = client.post("/events", json={**EVENT_BODY, "category": "party"}, headers=headers)
    assert bad_category.status_code == 400


def test_list_events(client, create_event):
    create_event(title="Later", starts_in=timedelta(days=20))
    create_event(title="Sooner", starts_in=timedelta(days=2))
    response = client.get("/events")
    assert response.status_code == 200
    assert [e["title"] for e in response.json()["data"]] == ["Sooner", "Later"]


def test_list_events_in_window(client, create_event):
    create_event(title="Sooner", starts_in=timedelta(days=2))
    create_event(title="Later", starts_in=timedelta(days=20))
    start = (utcnow() + timedelta(days=10)).isoformat()
    response = client.get("/events", params={"start": start})
    assert [e["title"] for e in response.json()["data"]] == ["Later"]


def test_update_event_ownership(client, create_event, create_user, admin, login):
    event = create_event()
    other = create_user(role="organizer")
    assert client.put(f"/events/{event.id}", json={"title": "Hijack"}, headers=login(other)).status_code == 403
    response = client.put(f"/events/{event.id}", json={"title": "Renamed", "isActive": False}, headers=login(admin))
    assert response.status_code == 200
    assert response.json()["data"]["title"] == "Renamed"
    assert response.json()["data"]["isActive"] is False


def test_capacity_cannot_drop_below_registrants(client, create_event, create_user, organizer, login):
    event = create_event(capacity=3)
    for _ in range(2):
        client.post(f"/events/register/{event.id}", headers=login(create_user()))
    response = client.put(f"/events/{event.id}", json={"capacity": 1}, headers=login(organizer))
    assert response.status_code == 400
    assert response.json()["detail"] == "Capacity cannot be lower than the number of registrants"
    assert client.put(f"/events/{event.id}", json={"capacity": 2}, headers=login(organizer)).status_code == 200


def test_delete_event_keeps_payments(client, create_event, organizer, student, login):
    event = create_event()
    client.post(f"/events/register/{event.id}", headers=login(student))
    assert client.delete(f"/events/{event.id}", headers=login(organizer)).status_code == 200
    assert client.get(f"/events/{event.id}").status_code == 404
    assert len(db.list_payments(event_id=event.id)) == 1


def test_next_scheduled_event(client, create_event):
    create_event(title="Far", starts_in=timedelta(days=30))
    create_event(title="Near", starts_in=timedelta(days=1))
    assert client.get("/scheduler/next").json()["data"]["title"] == "Near"


# -------------------------------
# Registration
# -------------------------------
def test_register_free_event(client, create_event, student, login, mailbox):
    event = create_event(capacity=1)
    response = client.post(f"/events/register/{event.id}", headers=login(student))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["isPaid"] is False
    assert body["data"]["registeredUsers"] == [student.id]
    assert body["ticketId"].startswith("TCK-")
    assert "warning" not in body
    assert student.email in mailbox.outbox[0]["To"]


def test_register_twice(client, create_event, student, login):
    event = create_event()
    headers = login(student)
    client.post(f"/events/register/{event.id}", headers=headers)
    response = client.post(f"/events/register/{event.id}", headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Already registered for this event"
    assert len(db.list_payments(user_id=student.id)) == 1


def test_register_full_event(client, create_event, create_user, login):
    event = create_event(capacity=1)
    client.post(f"/events/register/{event.id}", headers=login(create_user()))
    response = client.post(f"/events/register/{event.id}", headers=login(create_user()))
    assert response.status_code == 400
    assert response.json()["detail"] == "Event capacity reached"


def test_register_missing_event(client, student, login):
    response = client.post("/events/register/does-not-exist", headers=login(student))
    assert response.status_code == 404
    assert response.json()["detail"] == "Event not found"


def test_register_reports_email_failure(client, create_event, student, login, mailbox):
    mailbox.fail = True
    event = create_event()
    body = client.post(f"/events/register/{event.id}", headers=login(student)).json()
    assert body["success"] is True
    assert body["warning"]
    assert manager.get_event(event.id).registered_users == [student.id]


def test_register_event_with_multiline_title(client, create_event, student, login, mailbox):
    event = create_event(title="Tech Talk\nDay 2")
    response = client.post(f"/events/register/{event.id}", headers=login(student))
    assert response.status_code == 200
    assert "warning" not in response.json()
    assert mailbox.outbox[0]["Subject"] == "Your Ticket for Tech Talk Day 2"
    assert len(db.list_payments(user_id=student.id)) == 1


def test_paid_event_flow(client, create_event, student, login):
    event = create_event(is_paid=True, price=500)
    headers = login(student)

    response = client.post(f"/events/register/{event.id}", headers=headers)
    assert response.json()["isPaid"] is True
    assert response.json()["data"] == {"event": event.id, "price": 500}
    assert manager.get_event(event.id).registered_users == []

    response = client.post(f"/events/complete-payment/{event.id}", json={"transactionId": "PHONEPAY-1"}, headers=headers)
    assert response.status_code == 200
    payment = response.json()["data"]["payment"]
    assert payment["amount"] == 500
    assert payment["status"] == "success"
    assert payment["paymentId"] == "PHONEPAY-1"
    assert response.json()["data"]["event"]["registeredUsers"] == [student.id]


def test_unregister(client, create_event, student, login):
    event = create_event()
    headers = login(student)
    assert client.post(f"/events/unregister/{event.id}", headers=headers).status_code == 400
    client.post(f"/events/register/{event.id}", headers=headers)
    response = client.post(f"/events/unregister/{event.id}", headers=headers)
    assert response.json() == {"success": True, "message": "Successfully unregistered from event"}
    assert manager.get_event(event.id).registered_users == []


def test_registered_events(client, create_event, student, login):
    event = create_event()
    headers = login(student)
    client.post(f"/events/register/{event.id}", headers=headers)
    data = client.get("/users/registered-events", headers=headers).json()["data"]
    assert [e["id"] for e in data] == [event.id]


# -------------------------------
# Tickets and participants
# -------------------------------
def test_ticket_download_requires_registration(client, create_event, student, login, ticket_files):
    event = create_event()
    response = client.get(f"/events/{event.id}/ticket", headers=login(student))
    assert response.status_code == 403
    assert ticket_files() == []


def test_ticket_download(client, create_event, student, login, ticket_files):
    event = create_event(title="Hack Night")
    headers = login(student)
    client.post(f"/events/register/{event.id}", headers=headers)
    response = client.get(f"/events/{event.id}/ticket", headers=headers)
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert "hack_night_ticket.pdf" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")
    assert ticket_files() == []


def test_participants(client, create_event, organizer, student, login):
    event = create_event(is_paid=True, price=200)
    client.post(f"/events/complete-payment/{event.id}", json={"transactionId": "TX-1"}, headers=login(student))

    response = client.get(f"/events/{event.id}/participants", headers=login(organizer))
    assert response.status_code == 200
    [participant] = response.json()["data"]
    assert participant["email"] == student.email
    assert participant["paid"] is True
    assert participant["amount"] == 200
    assert participant["ticketId"].startswith("TCK-")

    assert client.get(f"/events/{event.id}/participants", headers=login(student)).status_code == 403


def test_export_participants(client, create_event, organizer, student, login):
    event = create_event()
    client.post(f"/events/register/{event.id}", headers=login(student))
    response = client.get(f"/events/{event.id}/participants/export", headers=login(organizer))
    assert response.status_code == 200
    lines = response.text.strip().splitlines()
    assert lines[0].startswith("ID,Name,Email")
    assert student.email in lines[1]


# -------------------------------
# Payments
# -------------------------------
def test_initiate_payment(client, create_event, student, login):
    headers = login(student)
    free = create_event()
    assert client.post("/payments/initiate", json={"eventId": free.id}, headers=headers).status_code == 400
    paid = create_event(is_paid=True, price=150)
    data = client.post("/payments/initiate", json={"eventId": paid.id}, headers=headers).json()["data"]
    assert data["amount"] == 150
    assert data["redirectUrl"] == f"/payment/process/{data['paymentId']}"


def test_process_payment_failed(client, create_event, student, login):
    event = create_event(is_paid=True, price=150)
    response = client.post("/payments/process/pay-1", json={"eventId": event.id, "status": "failed"}, headers=login(student))
    assert response.status_code == 400
    assert response.json()["data"]["payment"]["status"] == "failed"
    assert manager.get_event(event.id).registered_users == []


def test_process_payment_success(client, create_event, student, login):
    event = create_event(is_paid=True, price=150)
    headers = login(student)
    response = client.post("/payments/process/pay-2", json={"eventId": event.id, "status": "success"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["payment"]["paymentMethod"] == "simulated"
    assert manager.get_event(event.id).registered_users == [student.id]

    # A second confirmation for the same registration is refused
    again = client.post(f"/events/complete-payment/{event.id}", json={"transactionId": "pay-2"}, headers=headers)
    assert again.status_code == 400
    assert len(db.list_payments(user_id=student.id, status="success")) == 1


def test_process_payment_rejects_unknown_status(client, create_event, student, login):
    event = create_event(is_paid=True, price=150)
    response = client.post("/payments/process/pay-3", json={"eventId": event.id, "status": "completed"}, headers=login(student))
    assert response.status_code == 400


def test_payment_simulation_disabled(client, create_event, student, login, monkeypatch):
    import config
    monkeypatch.setattr(config, "PAYMENT_SIMULATION", False)
    event = create_event(is_paid=True, price=150)
    response = client.post("/payments/process/pay-4", json={"eventId": event.id, "status": "success"}, headers=login(student))
    assert response.status_code == 404


def test_payment_history(client, create_event, student, login):
    event = create_event(title="Paid Talk", is_paid=True, price=75)
    headers = login(student)
    client.post(f"/events/complete-payment/{event.id}", json={"transactionId": "TX-1"}, headers=headers)
    data = client.get("/payments/history", headers=headers).json()["data"]
    assert data[0]["eventDetails"]["title"] == "Paid Talk"


def test_transactions_scoped_by_role(client, create_event, create_user, organizer, admin, student, login):
    mine = create_event(is_paid=True, price=100)
    other_organizer = create_user(role="organizer")
    theirs = create_event(is_paid=True, price=300, organizer_id=other_organizer.id)
    headers = login(student)
    client.post(f"/events/complete-payment/{mine.id}", json={"transactionId": "TX-1"}, headers=headers)
    client.post(f"/events/complete-payment/{theirs.id}", json={"transactionId": "TX-2"}, headers=headers)

    own = client.get("/payments/transactions", headers=login(organizer)).json()["data"]
    assert [t["event"] for t in own] == [mine.id]
    assert own[0]["userDetails"]["email"] == student.email
    assert client.get("/payments/transactions", headers=login(admin)).json()["count"] == 2
    assert client.get("/payments/transactions", params={"status": "failed"}, headers=login(admin)).json()["count"] == 0
    assert client.get("/payments/transactions", headers=headers).status_code == 403


# -------------------------------
# Users and dashboard
# -------------------------------
def test_admin_user_management(client, admin, student, login):
    headers = login(admin)
    assert client.get("/users", headers=login(student)).status_code == 403
    assert client.get("/users", headers=headers).json()["count"] == 2

    response = client.put(f"/users/{student.id}", json={"role": "organizer"}, headers=headers)
    assert response.json()["data"]["role"] == "organizer"
    assert client.put(f"/users/{student.id}", json={"role": "attendee"}, headers=headers).status_code == 400

    assert client.delete(f"/users/{admin.id}", headers=headers).status_code == 400
    assert client.delete(f"/users/{student.id}", headers=headers).status_code == 200
    assert client.get(f"/users/{student.id}", headers=headers).status_code == 404


def test_dashboard_stats(client, create_event, organizer, admin, student, login):
    paid = create_event(is_paid=True, price=400)
    create_event(title="Running", starts_in=timedelta(hours=-1))
    client.post(f"/events/complete-payment/{paid.id}", json={"transactionId": "TX-1"}, headers=login(student))

    stats = client.get("/dashboard/stats", headers=login(organizer)).json()["data"]
    assert stats["totalEvents"] == 2
    assert stats["upcomingEvents"] == 1
    assert stats["ongoingEvents"] == 1
    assert stats["totalRegistrations"] == 1
    assert stats["totalRevenue"] == 400
    assert "totalUsers" not in stats
    assert client.get("/dashboard/stats", headers=login(admin)).json()["data"]["totalUsers"] == 3
    assert client.get("/dashboard/stats", headers=login(student)).status_code == 403
