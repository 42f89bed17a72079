class LiveQuizError(Exception):
    """Base class for orchestrator failures (never used for client rejections)"""


class StoreUnavailable(LiveQuizError):
    """Durable store kept failing after the retry budget was spent"""


class QuizNotFound(LiveQuizError):
    def __init__(self, quiz_id: str):
        super().__init__(f"Quiz {quiz_id} not found")
        self.quiz_id = quiz_id


class MalformedQuiz(LiveQuizError):
    def __init__(self, quiz_id: str, detail: str):
        super().__init__(f"Quiz {quiz_id} is malformed: {detail}")
        self.quiz_id = quiz_id
        self.detail = detail
