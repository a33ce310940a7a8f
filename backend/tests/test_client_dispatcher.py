import sys
import os
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import requests

from evaluator.core.errors import GatewayError
from evaluator.core.fallbacks import (
    GATEWAY_FEEDBACK,
    IMAGE_FEEDBACK,
    MISSING_ENTRY_FEEDBACK,
    NO_ANSWER_FEEDBACK,
    UNPARSEABLE_FEEDBACK,
)
from evaluator.core.schemas import QuestionSpec, build_request
from evaluator.services.client_dispatcher import NO_KEY_FEEDBACK, ClientDispatcher, CredentialStore

IMAGE = "aGVsbG8="


def _response(status_code, body):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = "Internal Server Error" if status_code >= 500 else "OK"
    response.text = json.dumps(body)
    response.json.return_value = body
    return response


class LocalGateway:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = 0

    async def generate(self, prompt, images=(), mode=None, retries=None):
        self.calls += 1
        if self.error:
            raise self.error
        return json.dumps(self.reply)


class TestCredentialStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = Path(self.tmp.name) / "nested" / "local_storage.json"

    def test_set_get_clear(self):
        store = CredentialStore(self.path)
        self.assertIsNone(store.get())

        store.set("abc123")
        self.assertEqual(store.get(), "abc123")
        self.assertEqual(json.loads(self.path.read_text()), {"gemini_api_key": "abc123"})

        store.clear()
        self.assertIsNone(store.get())

    def test_other_keys_preserved(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"theme": "dark"}))
        store = CredentialStore(self.path)
        store.set("k")
        store.clear()
        self.assertEqual(json.loads(self.path.read_text()), {"theme": "dark"})

    def test_corrupt_file_ignored(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{broken")
        self.assertIsNone(CredentialStore(self.path).get())


class TestClientDispatcher(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.store = CredentialStore(Path(self.tmp.name) / "local_storage.json")
        self.session = mock.Mock()
        self.local = LocalGateway({"score": 2, "improvements": ["More detail"], "feedback": "Graded locally"})
        self.factory = mock.Mock(return_value=self.local)
        self.ask = mock.Mock(return_value="")

    def _dispatcher(self, **kwargs):
        options = dict(
            credentials=self.store,
            ask_for_key=self.ask,
            gateway_factory=self.factory,
            session=self.session,
        )
        options.update(kwargs)
        return ClientDispatcher("http://backend:8000/", **options)

    # --- Backend path ---

    async def test_backend_success(self):
        self.session.post.return_value = _response(200, {"score": 4, "improvements": [], "feedback": "Good"})
        request = build_request({"question": "Q", "studentAnswer": "A", "maxMarks": 5})

        result = await self._dispatcher().evaluate(request)

        self.assertEqual(result.score, 4)
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "http://backend:8000/api/evaluate")
        self.assertEqual(kwargs["json"]["studentAnswer"], "A")
        self.assertEqual(kwargs["json"]["maxMarks"], 5)
        self.factory.assert_not_called()

    async def test_image_request_goes_to_ocr_endpoint(self):
        self.session.post.return_value = _response(200, {
            "extractedText": "text", "score": 1, "maxMarks": 5, "improvements": [], "feedback": "ok",
        })
        request = build_request({"image": IMAGE, "question": "Q"}, ocr=True)

        result = await self._dispatcher().evaluate(request)

        self.assertEqual(result.extracted_text, "text")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "http://backend:8000/api/ocr-evaluate")
        self.assertEqual(kwargs["json"]["mode"], "single")
        self.assertEqual(kwargs["json"]["images"][0]["data"], IMAGE)

    async def test_backend_batch_is_joined_and_clamped(self):
        """A partial batch from the backend still covers every question with scores within marks."""
        self.session.post.return_value = _response(200, [{"questionId": "a", "score": 9, "feedback": "great"}])
        request = build_request({
            "questions": [{"id": "a", "text": "A", "marks": 2}, {"id": "b", "text": "B", "marks": 2}],
            "answers": {"a": "x", "b": "y"},
        })

        result = await self._dispatcher().evaluate(request)

        self.assertEqual([(e.question_id, e.score) for e in result], [("a", 2), ("b", 0)])
        self.assertEqual(result[1].feedback, MISSING_ENTRY_FEEDBACK)
        self.factory.assert_not_called()

    async def test_backend_full_sheet_totals_recomputed(self):
        self.session.post.return_value = _response(200, {
            "extractedText": "Ans 2 ...",
            "results": [{"questionId": "2", "score": 50, "isRelevant": True, "feedback": "ok"}],
            "totalScore": 50,
            "totalMaxMarks": 50,
        })
        request = build_request({
            "mode": "full-sheet",
            "image": IMAGE,
            "questions": [{"id": "1", "text": "One", "marks": 3}, {"id": "2", "text": "Two", "marks": 4}],
        }, ocr=True)

        result = await self._dispatcher().evaluate(request)

        self.assertEqual([e.question_id for e in result.results], ["1", "2"])
        self.assertEqual([e.score for e in result.results], [0, 4])
        self.assertEqual((result.total_score, result.total_max_marks), (4, 7))

    async def test_backend_returns_wrong_shape(self):
        self.session.post.return_value = _response(200, {"unexpected": True})
        request = build_request({"question": "Q", "studentAnswer": "A"})

        result = await self._dispatcher().evaluate(request)
        self.assertEqual(result.score, 0)
        self.assertEqual(result.feedback, UNPARSEABLE_FEEDBACK)

    # --- Fallback path ---

    async def test_backend_error_falls_back_to_stored_key(self):
        self.store.set("stored-key")
        self.session.post.return_value = _response(500, {"error": "Server Error", "details": "boom"})
        request = build_request({"question": "Q", "studentAnswer": "A"})

        result = await self._dispatcher().evaluate(request)

        self.assertEqual(result.score, 2)
        self.assertEqual(result.feedback, "Graded locally")
        self.factory.assert_called_once_with("stored-key")
        self.ask.assert_not_called()

    async def test_image_fallback_is_zero_score(self):
        self.store.set("stored-key")
        self.session.post.side_effect = requests.ConnectionError("refused")
        request = build_request({"images": [IMAGE], "maxMarks": 3}, ocr=True)

        result = await self._dispatcher().evaluate(request)

        self.assertEqual(result.score, 0)
        self.assertEqual(result.feedback, IMAGE_FEEDBACK)
        self.assertEqual(result.max_marks, 3)
        self.factory.assert_not_called()

    async def test_backend_only_skips_local_grading(self):
        self.store.set("stored-key")
        self.session.post.side_effect = requests.Timeout("slow")
        request = build_request({"question": "Q", "studentAnswer": "A"})

        result = await self._dispatcher(backend_only=True).evaluate(request)

        self.assertEqual(result.score, 0)
        self.assertEqual(result.feedback, GATEWAY_FEEDBACK)
        self.factory.assert_not_called()

    async def test_no_key_available(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        request = build_request({"question": "Q", "studentAnswer": "A"})

        result = await self._dispatcher().evaluate(request)

        self.assertEqual(result.score, 0)
        self.assertEqual(result.feedback, NO_KEY_FEEDBACK)
        self.ask.assert_called_once()

    async def test_invalid_key_is_purged(self):
        self.store.set("bad-key")
        self.local.error = GatewayError("Gemini API returned an error", status=400, body="API key not valid.")
        self.session.post.side_effect = requests.ConnectionError("refused")
        request = build_request({"question": "Q", "studentAnswer": "A"})

        result = await self._dispatcher().evaluate(request)

        self.assertEqual(result.score, 0)
        self.assertIsNone(self.store.get())

    async def test_evaluate_questions_fans_out(self):
        """Answered questions are graded concurrently; the operator is asked for a key once."""
        self.ask.return_value = " typed-key "
        self.session.post.side_effect = requests.ConnectionError("refused")
        questions = [
            QuestionSpec(id="1", text="One", marks=2),
            QuestionSpec(id="2", text="Two", marks=3),
            QuestionSpec(id="3", text="Three"),
        ]

        result = await self._dispatcher().evaluate_questions(questions, {"1": "a", "3": "c"})

        self.assertEqual([e.question_id for e in result], ["1", "2", "3"])
        self.assertEqual([e.score for e in result], [2, 0, 2])
        self.assertEqual(result[1].feedback, NO_ANSWER_FEEDBACK)
        self.assertEqual(self.session.post.call_count, 2)
        self.assertEqual(self.local.calls, 2)
        self.ask.assert_called_once()
        self.assertEqual(self.store.get(), "typed-key")


if __name__ == '__main__':
    unittest.main()
