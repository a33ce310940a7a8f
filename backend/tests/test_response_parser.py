import sys
import os
import json
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from evaluator.core.errors import ResponseShapeError
from evaluator.core.fallbacks import UNPARSEABLE_FEEDBACK
from evaluator.core.schemas import FullSheetResult, SingleResult, build_request
from evaluator.services.response_parser import load_json, parse_response, strip_code_fences

SINGLE = build_request({"question": "Q?", "studentAnswer": "A", "maxMarks": 5})
BATCH = build_request({
    "questions": [{"id": "1", "text": "One"}, {"id": "2", "text": "Two"}],
    "answers": {"1": "x", "2": "y"},
})
SHEET = build_request({
    "mode": "full-sheet",
    "image": "aGVsbG8=",
    "questions": [{"id": "1", "text": "One", "marks": 4}, {"id": "2", "text": "Two", "marks": 6}],
}, ocr=True)


class TestResponseParser(unittest.TestCase):

    # --- Cleaning ---

    def test_strip_code_fences(self):
        raw = '```json\n{"score": 3}\n```'
        self.assertEqual(strip_code_fences(raw), '{"score": 3}')
        self.assertEqual(strip_code_fences('```\n[]\n```'), '[]')

    def test_load_json_empty(self):
        with self.assertRaises(ResponseShapeError):
            load_json("   ")

    # --- Single ---

    def test_parse_single_with_fences(self):
        raw = '```json\n{"score": 3.5, "improvements": ["Add an example"], "feedback": "Good"}\n```'
        result = parse_response(raw, SINGLE)
        self.assertIsInstance(result, SingleResult)
        self.assertEqual(result.score, 3.5)
        self.assertEqual(result.improvements, ["Add an example"])
        self.assertEqual(result.feedback, "Good")

    def test_improvements_string_coerced_to_list(self):
        result = parse_response('{"score": 2, "improvements": "Be precise", "feedback": "ok"}', SINGLE)
        self.assertEqual(result.improvements, ["Be precise"])

    def test_camel_case_fields(self):
        raw = '{"score": 1, "feedback": "f", "extractedText": "some text", "isRelevant": true, "maxMarks": 5}'
        result = parse_response(raw, SINGLE)
        self.assertEqual(result.extracted_text, "some text")
        self.assertTrue(result.is_relevant)

    def test_malformed_json_falls_back(self):
        """Unparseable output scores 0 and carries a truncated diagnostic."""
        raw = "Sorry, I cannot grade this. " + "x" * 500
        result = parse_response(raw, SINGLE)

        self.assertEqual(result.score, 0)
        self.assertEqual(result.feedback, UNPARSEABLE_FEEDBACK)
        diagnostic = [i for i in result.improvements if i.startswith("Model output: ")]
        self.assertEqual(len(diagnostic), 1)
        self.assertEqual(len(diagnostic[0]), len("Model output: ") + 200 + len("..."))

    def test_missing_score_falls_back(self):
        result = parse_response('{"feedback": "no score here"}', SINGLE)
        self.assertEqual(result.score, 0)
        self.assertEqual(result.feedback, UNPARSEABLE_FEEDBACK)

    # --- Batch ---

    def test_parse_batch_array(self):
        raw = json.dumps([
            {"questionId": "1", "score": 4, "improvements": [], "feedback": "fine"},
            {"questionId": 2, "score": 1, "improvements": ["more"], "feedback": "weak"},
        ])
        result = parse_response(raw, BATCH)
        self.assertEqual([e.question_id for e in result], ["1", "2"])
        self.assertEqual([e.score for e in result], [4, 1])

    def test_parse_batch_wrapped(self):
        raw = json.dumps({"results": [{"questionId": "1", "score": 2, "feedback": "ok"}]})
        result = parse_response(raw, BATCH)
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].improvements, [])

    def test_batch_drops_malformed_entries(self):
        raw = json.dumps([{"questionId": "1", "score": "lots"}, {"questionId": "2", "score": 3}])
        result = parse_response(raw, BATCH)
        self.assertEqual([e.question_id for e in result], ["2"])

    def test_batch_fallback_covers_every_question(self):
        result = parse_response("not json", BATCH)
        self.assertEqual([e.question_id for e in result], ["1", "2"])
        self.assertTrue(all(e.score == 0 for e in result))

    # --- Full sheet ---

    def test_parse_full_sheet(self):
        raw = json.dumps({
            "extractedText": "Ans 1 ... Ans 2 ...",
            "results": [
                {"questionId": "1", "questionNumber": 1, "extractedAnswer": "a", "isRelevant": True,
                 "score": 3, "maxMarks": 4, "improvements": [], "feedback": "good"},
            ],
            "totalScore": "n/a",
            "totalMaxMarks": 10,
            "overallFeedback": "Decent",
        })
        result = parse_response(raw, SHEET)
        self.assertIsInstance(result, FullSheetResult)
        self.assertEqual(result.results[0].extracted_answer, "a")
        self.assertEqual(result.total_score, 0)
        self.assertEqual(result.overall_feedback, "Decent")

    def test_full_sheet_fallback(self):
        result = parse_response('{"results": "nope"}', SHEET)
        self.assertEqual([e.question_id for e in result.results], ["1", "2"])
        self.assertEqual(result.total_score, 0)
        self.assertEqual(result.total_max_marks, 10)
        self.assertEqual(result.results[0].feedback, UNPARSEABLE_FEEDBACK)


if __name__ == '__main__':
    unittest.main()
