import itertools
import unittest
from types import SimpleNamespace

from sqlalchemy.exc import OperationalError

from medilink.core.errors import (
    ConversationBusyError,
    PatientMismatchError,
    PaymentRequiredError,
    RateLimitError,
    SessionCreationError,
    SessionNotFoundError,
    UpstreamError,
)
from medilink.models.chat import (
    ChatMessage,
    ChatRole,
    ConversationPhase,
    MedicalChatResponse,
    MedicalRecords,
    MessageType,
)
from medilink.services.conversation import (
    CONNECTION_ERROR_REPLY,
    GREETING,
    PAYMENT_REQUIRED_REPLY,
    RATE_LIMIT_REPLY,
    ConversationController,
    SessionLockRegistry,
    compute_next_phase,
)

PATIENT = ("patient-1", "Jane Doe", "jane@example.com")


class FakeStore:
    def __init__(self, records=None, fail_session=False, fail_records=False, fail_messages=False):
        self.records = records
        self.fail_session = fail_session
        self.fail_records = fail_records
        self.fail_messages = fail_messages
        self.sessions = {}
        self.messages = []
        self.analyses = []
        self.calls = []
        self._ids = itertools.count(1)

    def create_session(self, patient_id, patient_name, patient_email):
        self.calls.append("create_session")
        if self.fail_session:
            raise SessionCreationError("Failed to create chat session")
        session = SimpleNamespace(
            id=f"session-{len(self.sessions) + 1}",
            patient_id=patient_id,
            phase=ConversationPhase.initial,
        )
        self.sessions[session.id] = session
        return session

    def get_session(self, session_id):
        return self.sessions.get(session_id)

    def save_message(self, session_id, message, phase=None):
        self.calls.append("save_message")
        if self.fail_messages:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        record = SimpleNamespace(
            id=next(self._ids),
            session_id=session_id,
            role=message.role.value,
            content=message.content,
            message_type=message.message_type.value,
            message_metadata=dict(message.metadata),
            expects_severity_rating=message.expects_severity_rating,
            created_at=message.created_at,
        )
        self.messages.append(record)
        if phase is not None:
            self.sessions[session_id].phase = phase
        return record

    def list_messages(self, session_id):
        return [record for record in self.messages if record.session_id == session_id]

    def fetch_medical_records(self, patient_id):
        self.calls.append("fetch_medical_records")
        if self.fail_records:
            raise OperationalError("SELECT", {}, Exception("no such table: profiles"))
        return self.records

    def save_analysis(self, **kwargs):
        self.calls.append("save_analysis")
        self.analyses.append(kwargs)
        return SimpleNamespace(**kwargs)


class FakeAnalysisService:
    def __init__(self, error=None):
        self.error = error
        self.requests = []

    def analyze(self, payload):
        self.requests.append(payload)
        if self.error is not None:
            raise self.error
        return MedicalChatResponse(
            reply=f"reply {len(self.requests)}",
            session_id=payload.session_id,
            phase=payload.phase,
            expects_severity_rating=payload.phase != ConversationPhase.analysis,
        )


class ComputeNextPhaseTests(unittest.TestCase):
    def test_transitions(self):
        self.assertEqual(compute_next_phase(ConversationPhase.initial, 0), ConversationPhase.questioning)
        self.assertEqual(compute_next_phase(ConversationPhase.initial, 1), ConversationPhase.initial)
        self.assertEqual(compute_next_phase(ConversationPhase.questioning, 2), ConversationPhase.questioning)
        self.assertEqual(compute_next_phase(ConversationPhase.questioning, 3), ConversationPhase.analysis)
        self.assertEqual(compute_next_phase(ConversationPhase.questioning, 5), ConversationPhase.analysis)
        self.assertEqual(compute_next_phase(ConversationPhase.analysis, 0), ConversationPhase.analysis)


class ConversationControllerTests(unittest.TestCase):
    def setUp(self):
        self.store = FakeStore(records=MedicalRecords(chronic_diseases=["Migraine"]))
        self.service = FakeAnalysisService()
        self.controller = ConversationController(self.store, self.service, history_window=10, question_threshold=3)

    def send(self, text, severity=None):
        self.controller.send_message(text, *PATIENT, severity_score=severity)

    def test_initial_greeting(self):
        self.assertEqual(len(self.controller.messages), 1)
        greeting = self.controller.messages[0]
        self.assertEqual(greeting.id, "init")
        self.assertEqual(greeting.role, ChatRole.assistant)
        self.assertEqual(greeting.message_type, MessageType.text)
        self.assertTrue(greeting.content.startswith("Hello! I'm MediAssist"))
        self.assertEqual(greeting.content, GREETING)
        self.assertEqual(self.controller.phase, ConversationPhase.initial)
        self.assertIsNone(self.controller.session_id)
        self.assertFalse(self.controller.loading)

    def test_first_message_moves_to_questioning(self):
        self.send("I have a headache")

        self.assertEqual(self.controller.phase, ConversationPhase.questioning)
        self.assertEqual(self.controller.session_id, "session-1")
        self.assertEqual(len(self.controller.messages), 3)

        user_turn, assistant_turn = self.controller.messages[1:]
        self.assertEqual(user_turn.role, ChatRole.user)
        self.assertEqual(user_turn.message_type, MessageType.text)
        self.assertEqual(assistant_turn.role, ChatRole.assistant)
        self.assertEqual(assistant_turn.message_type, MessageType.question)

        self.assertEqual([m.role for m in self.store.messages], ["user", "assistant"])
        self.assertEqual(self.store.messages[1].message_type, "question")
        self.assertEqual(self.store.sessions["session-1"].phase, ConversationPhase.questioning)

        self.assertEqual(len(self.service.requests), 1)
        request = self.service.requests[0]
        self.assertEqual(request.phase, ConversationPhase.questioning)
        self.assertEqual(request.message, "I have a headache")
        self.assertEqual(request.session_id, "session-1")
        self.assertEqual(request.patient_id, "patient-1")
        self.assertEqual(request.medical_records.chronic_diseases, ["Migraine"])
        self.assertEqual([turn.content for turn in request.conversation_history], [GREETING])
        self.assertTrue(self.controller.awaiting_severity_rating)

    def test_phase_is_monotonic(self):
        observed = [self.controller.phase]
        for index in range(7):
            self.send(f"answer {index}", severity=index % 6)
            observed.append(self.controller.phase)

        ranks = [phase.rank for phase in observed]
        self.assertEqual(ranks, sorted(ranks))
        self.assertEqual(observed[-1], ConversationPhase.analysis)

    def test_analysis_waits_for_three_questions(self):
        self.send("I have a headache")
        self.send("It is throbbing", severity=3)
        self.send("Since yesterday", severity=2)

        self.assertEqual(self.controller.question_count, 3)
        self.assertEqual(self.controller.phase, ConversationPhase.questioning)
        self.assertEqual(self.store.analyses, [])

        self.send("Light makes it worse", severity=4)

        self.assertEqual(self.service.requests[-1].phase, ConversationPhase.analysis)
        self.assertEqual(self.controller.phase, ConversationPhase.analysis)
        self.assertEqual(self.controller.messages[-1].message_type, MessageType.text)
        self.assertFalse(self.controller.awaiting_severity_rating)

    def test_severity_score_marks_scale_response(self):
        self.send("Pain level", severity=3)
        self.send("Also nausea")

        scale_turn, plain_turn = [record for record in self.store.messages if record.role == "user"]
        self.assertEqual(scale_turn.message_type, "scale_response")
        self.assertEqual(scale_turn.message_metadata, {"severity": 3})
        self.assertEqual(plain_turn.message_type, "text")
        self.assertEqual(plain_turn.message_metadata, {})

    def test_analysis_is_recorded_exactly_once(self):
        self.send("I have a headache")
        self.send("It is throbbing", severity=3)
        self.send("Since yesterday", severity=2)
        self.send("Light makes it worse", severity=4)
        self.send("What should I do next?")
        self.send("Thanks")

        self.assertEqual(self.controller.phase, ConversationPhase.analysis)
        self.assertEqual(self.store.calls.count("save_analysis"), 1)

        analysis = self.store.analyses[0]
        self.assertEqual(analysis["session_id"], "session-1")
        self.assertEqual(analysis["patient_id"], "patient-1")
        self.assertEqual(
            analysis["symptoms"],
            ["I have a headache", "It is throbbing", "Since yesterday", "Light makes it worse"],
        )
        self.assertEqual(
            analysis["severity_scores"],
            {"It is throbbing": 3, "Since yesterday": 2, "Light makes it worse": 4},
        )
        self.assertEqual(analysis["analysis_result"], "reply 4")
        self.assertEqual(analysis["medical_history_reviewed"].chronic_diseases, ["Migraine"])

    def test_history_window_keeps_last_ten_in_order(self):
        self.controller.messages = [
            ChatMessage(
                id=str(index),
                role=ChatRole.user if index % 2 else ChatRole.assistant,
                content=f"turn {index}",
            )
            for index in range(15)
        ]

        self.send("latest")

        history = self.service.requests[0].conversation_history
        self.assertEqual([turn.content for turn in history], [f"turn {index}" for index in range(5, 15)])

    def test_service_failure_appends_one_error_turn(self):
        self.send("I have a headache")
        before_phase = self.controller.phase
        before_count = len(self.controller.messages)
        self.service.error = UpstreamError("AI Gateway error: 500")

        self.send("It is throbbing", severity=3)

        self.assertEqual(len(self.controller.messages), before_count + 2)
        error_turn = self.controller.messages[-1]
        self.assertEqual(error_turn.role, ChatRole.assistant)
        self.assertEqual(error_turn.content, CONNECTION_ERROR_REPLY)
        self.assertEqual(self.controller.phase, before_phase)
        self.assertEqual(self.store.analyses, [])
        self.assertEqual(self.controller.notifications[-1].description, "AI Gateway error: 500")
        self.assertFalse(self.controller.loading)

    def test_failure_on_analysis_turn_writes_no_analysis(self):
        self.send("I have a headache")
        self.send("It is throbbing", severity=3)
        self.send("Since yesterday", severity=2)
        self.service.error = UpstreamError("AI Gateway error: 502")

        self.send("Light makes it worse", severity=4)

        self.assertEqual(self.controller.phase, ConversationPhase.questioning)
        self.assertEqual(self.store.analyses, [])

    def test_rate_limit_and_payment_errors_have_distinct_replies(self):
        self.service.error = RateLimitError("Rate limit exceeded. Please try again in a moment.")
        self.send("I have a headache")
        self.assertEqual(self.controller.messages[-1].content, RATE_LIMIT_REPLY)

        self.service.error = PaymentRequiredError("AI service credits depleted. Please contact support.")
        self.send("Still there?")
        self.assertEqual(self.controller.messages[-1].content, PAYMENT_REQUIRED_REPLY)
        self.assertEqual(len(self.controller.notifications), 2)
        self.assertEqual(self.controller.phase, ConversationPhase.initial)

    def test_blank_input_is_a_no_op(self):
        for text in ("", "   ", "\n\t"):
            self.send(text)

        self.assertEqual(len(self.controller.messages), 1)
        self.assertEqual(self.service.requests, [])
        self.assertEqual(self.store.calls, [])
        self.assertIsNone(self.controller.session_id)

    def test_session_creation_failure_aborts_send(self):
        store = FakeStore(fail_session=True)
        controller = ConversationController(store, self.service)

        controller.send_message("I have a headache", *PATIENT)

        self.assertEqual(len(controller.messages), 1)
        self.assertEqual(store.calls, ["create_session"])
        self.assertEqual(self.service.requests, [])
        self.assertIsNone(controller.session_id)
        self.assertFalse(controller.loading)
        self.assertEqual(controller.notifications[0].description, "Failed to create chat session")

    def test_session_is_created_once(self):
        self.send("I have a headache")
        self.send("It is throbbing", severity=3)

        self.assertEqual(self.store.calls.count("create_session"), 1)

    def test_medical_records_failure_is_not_fatal(self):
        store = FakeStore(fail_records=True)
        controller = ConversationController(store, self.service)

        controller.send_message("I have a headache", *PATIENT)

        self.assertIsNone(self.service.requests[0].medical_records)
        self.assertEqual(controller.phase, ConversationPhase.questioning)
        self.assertEqual(controller.notifications, [])

    def test_message_persistence_failure_does_not_abort_turn(self):
        store = FakeStore(fail_messages=True)
        controller = ConversationController(store, self.service)

        controller.send_message("I have a headache", *PATIENT)

        self.assertEqual(controller.phase, ConversationPhase.questioning)
        self.assertEqual(len(controller.messages), 3)
        self.assertEqual(controller.notifications, [])

    def test_overlapping_send_is_rejected(self):
        controller = self.controller
        outer = self.service
        rejected = []

        class ReentrantService(FakeAnalysisService):
            def analyze(self, payload):
                try:
                    controller.send_message("second message", *PATIENT)
                except ConversationBusyError as exc:
                    rejected.append(exc)
                return outer.analyze(payload)

        controller._analysis_service = ReentrantService()
        self.send("I have a headache")

        self.assertEqual(len(rejected), 1)
        self.assertEqual(len(outer.requests), 1)
        self.assertEqual(len(controller.messages), 3)
        self.assertFalse(controller.loading)

    def test_resume_restores_turns_and_phase(self):
        self.send("I have a headache")
        self.send("It is throbbing", severity=3)

        resumed = ConversationController.resume(self.store, self.service, "session-1")

        self.assertEqual(resumed.session_id, "session-1")
        self.assertEqual(resumed.phase, ConversationPhase.questioning)
        self.assertEqual(resumed.messages[0].id, "init")
        self.assertEqual(
            [m.content for m in resumed.messages[1:]],
            ["I have a headache", "reply 1", "It is throbbing", "reply 2"],
        )
        self.assertEqual(resumed.question_count, 2)
        self.assertTrue(resumed.awaiting_severity_rating)

    def test_resume_unknown_session(self):
        with self.assertRaises(SessionNotFoundError):
            ConversationController.resume(self.store, self.service, "missing")

    def test_resumed_session_rejects_another_patient(self):
        self.send("I have a headache")
        resumed = ConversationController.resume(self.store, self.service, "session-1")

        self.assertEqual(resumed.patient_id, "patient-1")
        with self.assertRaises(PatientMismatchError) as ctx:
            resumed.send_message("It is throbbing", "patient-2", "John Smith", "john@clinic.org", severity_score=3)

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(len(resumed.messages), 3)
        self.assertEqual(len(self.service.requests), 1)
        self.assertFalse(resumed.loading)

    def test_new_session_is_bound_to_its_first_patient(self):
        self.send("I have a headache")

        with self.assertRaises(PatientMismatchError):
            self.controller.send_message("Sore throat", "patient-2", "John Smith", "john@clinic.org")
        self.assertEqual(self.store.calls.count("fetch_medical_records"), 1)


class SessionLockRegistryTests(unittest.TestCase):
    def setUp(self):
        self.registry = SessionLockRegistry()

    def test_released_sessions_are_forgotten(self):
        for index in range(1000):
            with self.registry.hold(f"session-{index}"):
                self.assertEqual(len(self.registry), 1)

        self.assertEqual(len(self.registry), 0)
        self.assertEqual(self.registry._locks, {})

    def test_rejected_overlap_keeps_the_active_hold(self):
        with self.registry.hold("session-1"):
            with self.assertRaises(ConversationBusyError):
                with self.registry.hold("session-1"):
                    pass
            self.assertEqual(len(self.registry), 1)

            with self.assertRaises(ConversationBusyError):
                with self.registry.hold("session-1"):
                    pass

        self.assertEqual(self.registry._locks, {})
        with self.registry.hold("session-1"):
            pass

    def test_error_inside_hold_releases_the_session(self):
        with self.assertRaises(RuntimeError):
            with self.registry.hold("session-1"):
                raise RuntimeError("send failed")

        self.assertEqual(len(self.registry), 0)

    def test_missing_session_id_is_not_tracked(self):
        with self.registry.hold(None):
            self.assertEqual(len(self.registry), 0)


if __name__ == "__main__":
    unittest.main()
