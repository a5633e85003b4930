MCQ_SYSTEM_MESSAGE = (
    "You are an expert educator who creates high-quality MCQ questions. "
    "Always respond with valid JSON only."
)
PAPER_SYSTEM_MESSAGE = "You are an expert educator. Return valid JSON only."
VOICE_NOTES_SYSTEM_MESSAGE = "You are an expert note-taker. Return valid JSON only."

PAPER_ONE_MARK_COUNT = 5
PAPER_TWO_MARK_COUNT = 4
PAPER_FIVE_MARK_COUNT = 3
VOICE_NOTES_MCQ_COUNT = 5


def build_mcq_prompt(subject: str, topic: str, difficulty: str, count: int) -> str:
    return f"""Generate {count} multiple choice questions about {topic} in {subject}. Difficulty: {difficulty}.

Return a JSON array with this exact format:
[
  {{
    "question": "The question text",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "answer": "The correct option text (must match one of the options exactly)",
    "explanation": "Brief explanation of why this is correct"
  }}
]

Requirements:
- Each question must have exactly 4 options
- The answer must be the full text of the correct option
- Make questions appropriate for {difficulty} difficulty level
- Questions should be educational and accurate
- Return ONLY the JSON array, no other text"""


def build_paper_prompt(subject: str, topics: str) -> str:
    return f"""Create a question paper for {subject} covering: {topics}.

Return JSON with this format:
{{
  "oneMarks": [{{"question": "...", "marks": 1, "answer": "..."}}],
  "twoMarks": [{{"question": "...", "marks": 2, "answer": "..."}}],
  "fiveMarks": [{{"question": "...", "marks": 5, "answer": "..."}}]
}}

Generate {PAPER_ONE_MARK_COUNT} one-mark, {PAPER_TWO_MARK_COUNT} two-mark, and {PAPER_FIVE_MARK_COUNT} five-mark questions. Return ONLY JSON."""


def build_voice_notes_prompt(text: str) -> str:
    return f"""Analyze this lecture/note content and provide:
1. A clear, concise summary
2. {VOICE_NOTES_MCQ_COUNT} MCQs based on the content

Content: "{text}"

Return JSON:
{{
  "summary": "The summarized content...",
  "mcqs": [{{"question": "...", "options": ["A", "B", "C", "D"], "answer": "correct option"}}]
}}

Return ONLY valid JSON."""
