from typing import Dict, List

from langchain_core.prompts import PromptTemplate

from evaluator.core.schemas import (
    BatchTextRequest,
    EvaluationRequest,
    FullSheetImageRequest,
    QuestionSpec,
    SingleImageRequest,
    SingleTextRequest,
)

# --- PROMPT ENGINEERING ---
# Every prompt is a pure function of its request: no timestamps, no nonces.

RELEVANCE_POLICY = """**RELEVANCE ENFORCEMENT (MUST FOLLOW)**:
Before grading, verify that the student's answer is about the question asked.
- If the ENTIRE answer is completely unrelated to the question (different topic, different subject, different chapter entirely) or is only an unrelated diagram, give score = 0 and set isRelevant = false.
- If the answer partially addresses the topic but is incomplete or inaccurate, give reduced marks, NOT zero.
- If multiple images are uploaded and only SOME images contain irrelevant content (e.g. one page has the correct answer but another page has an unrelated graph, diagram or text), grade the relevant content normally, then cut that score in HALF. For example, if the relevant answer deserves 5/5 but one image is irrelevant, give 2.5/5. Always explain the halving in the feedback.
- Only give 0 if NOTHING in the answer relates to the question at all."""

SINGLE_TEXT_PROMPT = PromptTemplate.from_template("""
Act as an expert examiner. Evaluate the student's answer against the model answer.

Question: {question}
Model Answer: {model_answer}
Student Answer: {student_answer}
Maximum Marks: {max_marks}

GRADING RULES:
1. Award a score between 0 and {max_marks} (increments of 0.5).
2. List concrete improvements the student can make (empty list only for a perfect answer).
3. Keep feedback brief and constructive; mention exactly why marks were lost.

OUTPUT: Return strictly a single valid JSON object. No markdown, no code blocks.
{{
  "score": <0-{max_marks}>,
  "improvements": ["...", "..."],
  "feedback": "..."
}}
""")

BATCH_TEXT_PROMPT = PromptTemplate.from_template("""
Act as an expert examiner.
I will provide a list of questions, the model answer for each, and the student's answer.
Grade every item independently against its own model answer.

GRADING RULES:
1. Award each item a score between 0 and its Max Marks (increments of 0.5).
2. List concrete improvements for each item (empty list only for a perfect answer).
3. Keep feedback brief and constructive; mention exactly why marks were lost.

ITEMS TO GRADE:
{items}

OUTPUT: Return strictly a valid JSON array with exactly one object per item, in the same order as the items above.
Use the item's ID as "questionId". No markdown, no code blocks.
[
  {{"questionId": "<ID>", "score": <number>, "improvements": ["...", "..."], "feedback": "..."}}
]
""")

SINGLE_IMAGE_PROMPT = PromptTemplate.from_template("""
You are an expert teacher evaluating a student's handwritten/printed answer.

{relevance_policy}

IMPORTANT INSTRUCTIONS:
1. First, READ and EXTRACT all the text written in {pages}.
2. This is the student's answer to the question below.
3. FIRST check relevance of the content, THEN evaluate the relevant parts.

Question: {question}
Model Answer: {model_answer}
Max Marks: {max_marks}

Return STRICT JSON only (no markdown, no code blocks):
{{
  "extractedText": "The full raw text you extracted from the image(s)",
  "isRelevant": true or false,
  "score": <number between 0 and {max_marks}>,
  "maxMarks": {max_marks},
  "improvements": ["suggestion1", "suggestion2"],
  "feedback": "Detailed feedback. Note any irrelevant content but grade the relevant parts fairly"
}}
""")

FULL_SHEET_PROMPT = PromptTemplate.from_template("""
You are an expert teacher evaluating a student's handwritten/printed answer sheet.

{relevance_policy}
Apply this check to EACH answer separately.

IMPORTANT INSTRUCTIONS:
1. First, carefully READ and EXTRACT all the text visible in {pages}.
2. The student may have numbered their answers (Q1, Q2, Ans 1, etc.). Identify which answer corresponds to which question.
3. If an answer for a question is not found in the image, mark it as "Not attempted" with score 0.
4. For each answer, FIRST check relevance of the content, THEN evaluate the relevant parts.

QUESTIONS TO EVALUATE:
{questions}

Return STRICT JSON only (no markdown, no code blocks):
{{
  "extractedText": "The full raw text you extracted from the image(s)",
  "results": [
    {{
      "questionId": "ID_FROM_INPUT",
      "questionNumber": 1,
      "extractedAnswer": "The specific text you identified as the answer for this question",
      "isRelevant": true or false,
      "score": <number>,
      "maxMarks": <number>,
      "improvements": ["suggestion1", "suggestion2"],
      "feedback": "Detailed feedback. If partially irrelevant, note what was irrelevant and grade only the relevant parts"
    }}
  ],
  "totalScore": <number>,
  "totalMaxMarks": <number>,
  "overallFeedback": "General feedback on the entire answer sheet"
}}
""")


def _batch_items(questions: List[QuestionSpec], answers: Dict[str, str]) -> str:
    blocks = []
    for q in questions:
        blocks.append(
            "---\n"
            f"[ID: {q.id}]\n"
            f"Question: {q.text}\n"
            f"Model Answer: {q.model_answer}\n"
            f"Max Marks: {q.marks}\n"
            f"Student Answer: {answers.get(q.id, '').strip()}\n"
            "---"
        )
    return "\n".join(blocks)


def _sheet_questions(questions: List[QuestionSpec]) -> str:
    return "\n".join(
        f"Q{i + 1} (ID: {q.id}):\nQuestion: {q.text}\nModel Answer: {q.model_answer}\nMax Marks: {q.marks}\n"
        for i, q in enumerate(questions)
    )


def single_text_prompt(request: SingleTextRequest) -> str:
    return SINGLE_TEXT_PROMPT.format(
        question=request.question.strip(),
        model_answer=request.model_answer,
        student_answer=request.student_answer.strip(),
        max_marks=request.max_marks,
    )


def batch_text_prompt(request: BatchTextRequest) -> str:
    return BATCH_TEXT_PROMPT.format(items=_batch_items(request.questions, request.answers))


def single_image_prompt(request: SingleImageRequest) -> str:
    pages = (
        "these images (the student uploaded multiple pages for one answer)"
        if len(request.images) > 1
        else "this image"
    )
    return SINGLE_IMAGE_PROMPT.format(
        relevance_policy=RELEVANCE_POLICY,
        pages=pages,
        question=request.question,
        model_answer=request.model_answer,
        max_marks=request.max_marks,
    )


def full_sheet_prompt(request: FullSheetImageRequest) -> str:
    pages = (
        "these answer sheet images (the student has uploaded multiple pages)"
        if len(request.images) > 1
        else "this answer sheet image"
    )
    return FULL_SHEET_PROMPT.format(
        relevance_policy=RELEVANCE_POLICY,
        pages=pages,
        questions=_sheet_questions(request.questions),
    )


def build_prompt(request: EvaluationRequest) -> str:
    """Chooses the template for the request's mode and fills it in."""
    if isinstance(request, SingleTextRequest):
        return single_text_prompt(request)
    if isinstance(request, BatchTextRequest):
        return batch_text_prompt(request)
    if isinstance(request, SingleImageRequest):
        return single_image_prompt(request)
    if isinstance(request, FullSheetImageRequest):
        return full_sheet_prompt(request)
    raise TypeError(f"Unsupported request type: {type(request).__name__}")
