"""
Content ingestion and quiz authoring for Quiz Whiz.

Extracts text from uploaded PDFs, splits it into bounded chunks and asks the
Gemini API to turn a chunk into a draft multiple-choice quiz.
"""
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import fitz  # PyMuPDF
import requests

from .config_manager import ConfigManager
from .data_manager import DataManager
from .database import generate_id
from .exceptions import ChunkNotFound, GenerationError, InvalidQuizContent
from .models import DEFAULT_CHOICE_LABELS, ContentChunk, Question, Quiz, QuizStatus
from .quiz_engine import QuizEngine

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
REQUEST_TIMEOUT = 60
CHARS_PER_PAGE = 3000

_QUESTION_SPLIT = re.compile(r"QUESTION\s+\d+\s*:", re.IGNORECASE)
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def extract_text(path: str) -> Tuple[str, int]:
    """
    Extract plain text from a PDF.

    Returns:
        Tuple of (text, page_count)
    """
    with fitz.open(path) as doc:
        pages = [page.get_text() for page in doc]
        return "\n\n".join(pages), len(pages)


def create_content_chunks(text: str, document_id: str, chunk_size: int = 1500) -> List[ContentChunk]:
    """
    Split text into chunks of at most ``chunk_size`` characters on paragraph
    boundaries. A single paragraph longer than the bound stays whole.
    """
    chunks: List[ContentChunk] = []
    current = ""

    def flush():
        content = current.strip()
        index = len(chunks)
        chunks.append(ContentChunk(
            id=generate_id('CHK'),
            document_id=document_id,
            chunk_index=index,
            page_number=index * chunk_size // CHARS_PER_PAGE + 1,
            content=content,
            word_count=len(content.split())
        ))

    for paragraph in _PARAGRAPH_SPLIT.split(text or ""):
        if not paragraph.strip():
            continue
        if current and len(current) + len(paragraph) > chunk_size:
            flush()
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph

    if current.strip():
        flush()
    return chunks


def build_prompt(content: str, grade_level: str, subject: str, question_count: int = 10,
                 labels: Iterable[str] = DEFAULT_CHOICE_LABELS) -> str:
    labels = list(labels)
    option_lines = "\n".join(f"{label}) [Option {label}]" for label in labels)
    label_list = "/".join(labels)
    return f"""You are an expert educator creating a quiz for {grade_level} grade students studying {subject}.

Based on the following educational content, generate exactly {question_count} multiple-choice questions with {len(labels)} options each ({', '.join(labels)}).

CONTENT:
{content}

REQUIREMENTS:
1. Generate exactly {question_count} questions suitable for {grade_level} grade level
2. Each question should have exactly {len(labels)} options ({', '.join(labels)})
3. Questions should test understanding, not just memorization
4. Make sure all questions are directly related to the provided content
5. Provide clear, unambiguous correct answers

FORMAT YOUR RESPONSE EXACTLY AS FOLLOWS:

QUESTION 1:
[Question text here]
{option_lines}
CORRECT: [{label_list}]
EXPLANATION: [Brief explanation]

[Continue for all {question_count} questions...]
"""


def _parse_block(block: str, labels: List[str]) -> Optional[Dict[str, Any]]:
    lines = [line.strip() for line in block.strip().splitlines() if line.strip()]
    if len(lines) < len(labels) + 2:
        return None

    prompt_lines = []
    choices: Dict[str, str] = {}
    correct = None
    explanation = ""
    option_pattern = re.compile(rf"^({'|'.join(map(re.escape, labels))})\s*[).:]\s*(.*)$", re.IGNORECASE)

    for line in lines:
        upper = line.upper()
        if upper.startswith("CORRECT:"):
            correct = line.split(":", 1)[1].strip().strip("[]").upper()[:1]
            continue
        if upper.startswith("EXPLANATION:"):
            explanation = line.split(":", 1)[1].strip()
            continue
        match = option_pattern.match(line)
        if match and not choices.get(match.group(1).upper()):
            choices[match.group(1).upper()] = match.group(2).strip()
        elif not choices:
            prompt_lines.append(line)

    if not prompt_lines or correct not in labels or set(choices) != set(labels):
        return None
    if not all(choices.values()):
        return None
    return {
        'prompt': " ".join(prompt_lines),
        'choices': {label: choices[label] for label in labels},
        'correct_label': correct,
        'explanation': explanation
    }


def parse_quiz_response(text: str, labels: Iterable[str] = DEFAULT_CHOICE_LABELS) -> List[Question]:
    """
    Parse ``QUESTION n:`` blocks from generated text.

    Malformed blocks are dropped with a warning; the remaining questions are
    numbered 1..N in order.
    """
    labels = [label.upper() for label in labels]
    questions: List[Question] = []
    blocks = _QUESTION_SPLIT.split(text or "")[1:]

    for index, block in enumerate(blocks, start=1):
        parsed = _parse_block(block, labels)
        if parsed is None:
            logger.warning(f"Dropped malformed generated question block {index}")
            continue
        questions.append(Question(
            position=len(questions) + 1,
            difficulty=QuizEngine.determine_difficulty(parsed['prompt']),
            **parsed
        ))

    if blocks and len(questions) < len(blocks):
        logger.warning(f"Parsed {len(questions)} of {len(blocks)} generated questions")
    return questions


class QuizGenerator:
    """Turns uploaded documents into stored chunks and chunks into draft quizzes."""

    def __init__(self, data_manager: DataManager, config_manager: ConfigManager,
                 http_session: Optional[requests.Session] = None):
        self.logger = logging.getLogger(__name__)
        self.data_manager = data_manager
        self.config_manager = config_manager
        self.http = http_session or requests.Session()

    def process_document(self, path: str, document_id: str) -> Dict[str, Any]:
        """
        Extract a PDF, store its text and replace its chunks.

        The document row moves from 'processing' to 'completed', or to 'failed'
        when extraction raises.
        """
        if not os.path.isfile(path):
            raise ValueError(f"File not found: {path}")

        self.logger.info(f"Processing document {document_id}: {path}")
        self.data_manager.upsert_document(document_id, path, 'processing')
        try:
            text, page_count = extract_text(path)
        except Exception as e:
            self.logger.error(f"Extraction of document {document_id} failed: {e}")
            self.data_manager.update_document(document_id, 'failed')
            raise

        settings = self.config_manager.get_quiz_settings()
        chunks = create_content_chunks(text, document_id, settings.chunk_size)
        self.data_manager.update_document(document_id, 'completed', text, page_count)
        self.data_manager.replace_chunks(document_id, chunks)

        self.logger.info(
            f"Document {document_id} processed: {page_count} pages, {len(chunks)} chunks",
            extra={'event_type': 'document_processed', 'document_id': document_id}
        )
        return {
            'pageCount': page_count,
            'textLength': len(text),
            'chunksCreated': len(chunks)
        }

    def _call_model(self, prompt: str) -> str:
        api_key = self.config_manager.get_ai_api_key()
        if not api_key:
            raise GenerationError("Gemini API key is not configured")

        url = GEMINI_URL.format(model=self.config_manager.get_ai_model())
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.7}
        }
        try:
            response = self.http.post(
                url,
                params={"key": api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            raise GenerationError(f"Gemini request failed: {e}") from e

        if response.status_code != 200:
            raise GenerationError(f"Gemini returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, ValueError) as e:
            raise GenerationError(f"Failed to parse Gemini API response: {e}") from e

    def generate_questions(self, content: str, grade_level: str, subject: str) -> List[Question]:
        """
        Ask the model for questions about ``content``.

        Raises:
            GenerationError: If the API call fails
            InvalidQuizContent: If fewer than the minimum usable questions came back
        """
        settings = self.config_manager.get_quiz_settings()
        prompt = build_prompt(content, grade_level, subject, settings.questions_per_quiz,
                              settings.choice_labels)
        text = self._call_model(prompt)
        questions = parse_quiz_response(text, settings.choice_labels)

        if len(questions) < settings.min_generated_questions:
            raise InvalidQuizContent(
                f"Only {len(questions)} usable questions were generated",
                issues=["No valid questions were generated"]
            )
        return questions

    def generate_quiz(
        self,
        chunk_id: str,
        grade_level: str,
        subject: str,
        cohort_id: Optional[str] = None,
        teacher_id: Optional[str] = None
    ) -> Quiz:
        """
        Generate a draft quiz from a stored content chunk.

        Raises:
            ChunkNotFound: If the chunk does not exist
            GenerationError, InvalidQuizContent: See generate_questions
        """
        chunk = self.data_manager.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFound(f"Chunk {chunk_id} not found")

        questions = self.generate_questions(chunk.content, grade_level, subject)
        issues = QuizEngine(self.config_manager.get_choice_labels()).validate_questions(questions)
        if issues:
            raise InvalidQuizContent("Generated quiz failed validation", issues=issues)

        quiz = Quiz(
            id=generate_id('QZ'),
            title=f"{subject} Quiz - {datetime.now():%Y-%m-%d}",
            questions=questions,
            subject=subject,
            cohort_id=cohort_id,
            status=QuizStatus.DRAFT,
            created_by=teacher_id,
            source_chunk_id=chunk_id
        )
        self.data_manager.insert_quiz(quiz)
        self.logger.info(
            f"Generated draft quiz {quiz.id} with {quiz.total_questions} questions from chunk {chunk_id}",
            extra={'event_type': 'quiz_generated', 'quiz_id': quiz.id}
        )
        return quiz
