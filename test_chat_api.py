"""Live support chat through REST and WebSockets"""
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import PASSWORD


@pytest.fixture
def people(api):
    admin = api.signup_teacher(name="Asta Vaitkienė", email="asta@school.lt", role="admin")
    doctor = api.create_doctor(admin)
    student = api.signup_student()
    return admin, doctor, student


def test_available_doctors(api, people):
    admin, doctor, student = people

    doctors = student.get("/api/chat/doctors").json()
    assert [d["id"] for d in doctors] == [doctor.id]
    assert doctors[0]["specialization"] == "School psychologist"

    doctor.put("/api/chat/availability", json={"is_available": False})
    assert student.get("/api/chat/doctors").json() == []

    teacher = api.signup_teacher()
    assert teacher.put("/api/chat/availability", json={"is_available": True}).status_code == 403


def test_chat_lifecycle(api, people):
    admin, doctor, student = people

    started = student.post("/api/chat/sessions", json={})
    assert started.status_code == 201
    chat = started.json()
    assert chat["status"] == "waiting"
    assert chat["student_name"] == "Ona Petraitė"
    assert chat["doctor_id"] is None

    assert student.post("/api/chat/sessions", json={}).status_code == 409

    waiting = doctor.get("/api/chat/sessions").json()
    assert [c["id"] for c in waiting] == [chat["id"]]

    joined = doctor.post(f"/api/chat/sessions/{chat['id']}/join")
    assert joined.status_code == 200
    assert joined.json()["status"] == "active"
    assert joined.json()["doctor_id"] == doctor.id
    assert joined.json()["started_at"]

    assert doctor.get("/api/chat/sessions").json() == []
    active = doctor.get("/api/chat/sessions", params={"chat_status": "active"}).json()
    assert [c["id"] for c in active] == [chat["id"]]

    assert student.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "Hello"}).status_code == 201
    reply = doctor.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "Hi, how are you feeling?"})
    assert reply.status_code == 201
    assert reply.json()["sender_type"] == "doctor"
    assert reply.json()["sender_name"] == "Rasa Jankauskienė"

    messages = student.get(f"/api/chat/sessions/{chat['id']}/messages").json()
    assert [(m["sender_type"], m["message"]) for m in messages] == [
        ("student", "Hello"),
        ("doctor", "Hi, how are you feeling?"),
    ]

    ended = student.post(f"/api/chat/sessions/{chat['id']}/end")
    assert ended.json()["status"] == "ended"
    assert ended.json()["ended_at"]

    closed = student.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "Are you there?"})
    assert closed.status_code == 409
    assert student.post(f"/api/chat/sessions/{chat['id']}/end").status_code == 409

    # A new chat can be opened once the previous one has ended
    assert student.post("/api/chat/sessions", json={}).status_code == 201


def test_only_one_doctor_can_join(api, people):
    admin, doctor, student = people
    colleague = api.create_doctor(admin, name="Tomas Jonaitis", email="tomas@school.lt")

    chat = student.post("/api/chat/sessions", json={}).json()
    assert doctor.post(f"/api/chat/sessions/{chat['id']}/join").status_code == 200

    second = colleague.post(f"/api/chat/sessions/{chat['id']}/join")
    assert second.status_code == 409

    # Once taken, the chat is hidden from the other doctor
    assert colleague.get(f"/api/chat/sessions/{chat['id']}").status_code == 404
    assert colleague.post(f"/api/chat/sessions/{chat['id']}/end").status_code == 404
    assert colleague.post(f"/api/chat/sessions/{chat['id']}/join").status_code == 409


def test_doctor_must_join_before_writing(people):
    admin, doctor, student = people
    chat = student.post("/api/chat/sessions", json={}).json()

    early = doctor.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "Hello"})
    assert early.status_code == 409


def test_chats_are_private_to_participants(api, people):
    admin, doctor, student = people
    chat = student.post("/api/chat/sessions", json={}).json()

    classmate = api.signup_student(full_name="Jonas Jonaitis")
    assert classmate.get(f"/api/chat/sessions/{chat['id']}").status_code == 404
    assert classmate.get(f"/api/chat/sessions/{chat['id']}/messages").status_code == 404
    assert classmate.get("/api/chat/sessions").json() == []

    assert admin.get(f"/api/chat/sessions/{chat['id']}").status_code == 403

    other_admin = api.signup_teacher(name="Lina Lukė", email="lina@kaunas.lt", role="admin", school="Kaunas School")
    other_doctor = api.create_doctor(other_admin, name="Paulius Petrauskas", email="paulius@kaunas.lt")
    assert other_doctor.get("/api/chat/sessions").json() == []
    assert other_doctor.post(f"/api/chat/sessions/{chat['id']}/join").status_code == 404


def test_anonymous_chat_hides_student(people):
    admin, doctor, student = people

    chat = student.post("/api/chat/sessions", json={"is_anonymous": True}).json()
    assert chat["student_name"] == "Anonymous"
    assert chat["student_id"] == student.id

    seen_by_doctor = doctor.get(f"/api/chat/sessions/{chat['id']}").json()
    assert seen_by_doctor["student_id"] is None
    assert seen_by_doctor["student_name"] == "Anonymous"

    doctor.post(f"/api/chat/sessions/{chat['id']}/join")
    message = student.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "I feel hopeless and I want to die"})
    assert message.json()["sender_name"] == "Anonymous"

    alerts = doctor.get("/api/alerts").json()
    assert len(alerts) == 1
    assert alerts[0]["source_table"] == "chat_messages"
    assert alerts[0]["student_id"] is None
    assert alerts[0]["student_name"] == "Anonymous"


def test_chat_socket_receives_messages(client, people):
    admin, doctor, student = people
    chat = student.post("/api/chat/sessions", json={}).json()
    doctor.post(f"/api/chat/sessions/{chat['id']}/join")

    with client.websocket_connect(f"/ws/chat/{chat['id']}?token={student.token}") as socket:
        socket.send_text("ping")
        assert socket.receive_json() == {"event": "pong", "data": None}

        doctor.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "I am here"})
        event = socket.receive_json()
        assert event["event"] == "message"
        assert event["data"]["sender_type"] == "doctor"
        assert event["data"]["message"] == "I am here"

        student.post(f"/api/chat/sessions/{chat['id']}/end")
        status_event = socket.receive_json()
        assert status_event["event"] == "status"
        assert status_event["data"]["status"] == "ended"


def test_doctor_socket_announces_waiting_chats(client, people):
    admin, doctor, student = people

    with client.websocket_connect(f"/ws/doctors?token={doctor.token}") as socket:
        chat = student.post("/api/chat/sessions", json={"is_anonymous": True}).json()
        event = socket.receive_json()
        assert event["event"] == "session_waiting"
        assert event["data"]["id"] == chat["id"]
        assert event["data"]["student_name"] == "Anonymous"


def test_sockets_reject_bad_tokens(api, client, people):
    admin, doctor, student = people
    chat = student.post("/api/chat/sessions", json={}).json()
    classmate = api.signup_student(full_name="Jonas Jonaitis")

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/doctors"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/doctors?token={student.token}"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{chat['id']}?token={classmate.token}"):
            pass
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{chat['id']}?token=garbage"):
            pass


def test_chat_socket_drops_doctors_who_did_not_take_the_chat(api, client, people):
    admin, doctor, student = people
    colleague = api.create_doctor(admin, name="Tomas Jonaitis", email="tomas@school.lt")
    chat = student.post("/api/chat/sessions", json={}).json()

    with client.websocket_connect(f"/ws/chat/{chat['id']}?token={student.token}") as own_socket, \
            client.websocket_connect(f"/ws/chat/{chat['id']}?token={colleague.token}") as watcher:
        watcher.send_text("ping")
        assert watcher.receive_json()["event"] == "pong"

        assert doctor.post(f"/api/chat/sessions/{chat['id']}/join").status_code == 200
        with pytest.raises(WebSocketDisconnect):
            watcher.receive_json()

        assert own_socket.receive_json()["event"] == "status"
        student.post(f"/api/chat/sessions/{chat['id']}/messages", json={"message": "private words"})
        assert own_socket.receive_json()["data"]["message"] == "private words"

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{chat['id']}?token={colleague.token}"):
            pass


def test_chat_socket_closes_on_logout(client, people):
    admin, doctor, student = people
    chat = student.post("/api/chat/sessions", json={}).json()

    with client.websocket_connect(f"/ws/chat/{chat['id']}?token={student.token}") as socket:
        socket.send_text("ping")
        assert socket.receive_json()["event"] == "pong"

        assert student.post("/api/auth/logout").status_code == 200
        with pytest.raises(WebSocketDisconnect):
            socket.receive_json()

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{chat['id']}?token={student.token}"):
            pass


def test_password_change_closes_sockets_of_other_sessions(api, client, people):
    admin, doctor, student = people

    with client.websocket_connect(f"/ws/doctors?token={doctor.token}") as socket:
        other_device = api.login_teacher("rasa@school.lt")
        changed = other_device.post("/api/auth/change-password", json={
            "current_password": PASSWORD, "new_password": "Klaipeda2025",
        })
        assert changed.json()["revoked_sessions"] >= 1
        with pytest.raises(WebSocketDisconnect):
            socket.receive_json()

    # The session that changed the password keeps its socket
    with client.websocket_connect(f"/ws/doctors?token={other_device.token}") as socket:
        student.post("/api/chat/sessions", json={})
        assert socket.receive_json()["event"] == "session_waiting"
