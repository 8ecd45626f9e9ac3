"""Quiz: question set drafted as the script, validated and published as media."""

import json

from ..errors import PipelineError, PreconditionError
from ..state import MediaKind
from .base import StageService
from .questions import QuestionGenerator, parse_questions


class QuizService(StageService):
    kind = MediaKind.QUIZ

    def __init__(self, store, text, question_count: int = 5, tagger=None):
        super().__init__(store, text, tagger)
        self.questions = QuestionGenerator(text, count=question_count)

    def build_script(self, article, output, language):
        questions = self.questions.generate(article["content"], language)
        return {"script": json.dumps(questions, ensure_ascii=False)}

    def prepare_media(self, output, customization):
        try:
            parse_questions(output["script"])
        except PipelineError as e:
            raise PreconditionError(e.message) from e
        return {}

    def render_media(self, output, submission):
        return {"questions": parse_questions(output["script"])}
