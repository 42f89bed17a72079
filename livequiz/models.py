from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QuizStatus:
    """Durable lifecycle states of a quiz document"""

    SCHEDULED = "scheduled"
    LIVE = "live"
    FINALIZING = "finalizing"
    ENDED = "ended"
    FAILED = "failed"


class RejectReason:
    """Client-correctable rejection codes for join and answer submission"""

    QUIZ_NOT_FOUND = "quiz_not_found"
    QUIZ_NOT_LIVE = "quiz_not_live"
    QUIZ_ENDED = "quiz_ended"
    QUIZ_FULL = "quiz_full"
    WRONG_QUESTION = "wrong_question"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_ANSWERED = "already_answered"
    TIME_EXCEEDED = "time_exceeded"
    TOO_FAST = "too_fast"
    INVALID_OPTION = "invalid_option"
    TRY_AGAIN = "try_again"


REJECT_MESSAGES = {
    RejectReason.QUIZ_NOT_FOUND: "Quiz not found",
    RejectReason.QUIZ_NOT_LIVE: "Quiz not live",
    RejectReason.QUIZ_ENDED: "Quiz has ended",
    RejectReason.QUIZ_FULL: "Quiz is full",
    RejectReason.WRONG_QUESTION: "Answer for wrong question or late",
    RejectReason.NOT_ELIGIBLE: "Not eligible for this quiz",
    RejectReason.ALREADY_ANSWERED: "Question already answered",
    RejectReason.TIME_EXCEEDED: "Time exceeded",
    RejectReason.TOO_FAST: "Answer submitted too quickly",
    RejectReason.INVALID_OPTION: "Invalid option",
    RejectReason.TRY_AGAIN: "Something went wrong, please try again",
}


class RankPolicy:
    ELIGIBLE = "eligible"
    ANSWERED = "answered"


# ============================================================================
# REQUEST MODELS
# ============================================================================


class QuestionIn(BaseModel):
    text: str = Field(min_length=1)
    options: List[str] = Field(min_length=2, max_length=8)
    correctIndex: int
    points: int = Field(default=1, ge=0)
    category: Optional[str] = None

    @field_validator("correctIndex")
    @classmethod
    def _correct_in_range(cls, v, info):
        options = info.data.get("options") or []
        if options and not 0 <= v < len(options):
            raise ValueError("correctIndex must point at one of the options")
        return v


class QuizSettings(BaseModel):
    shuffleQuestions: bool = True
    shuffleOptions: bool = True
    showCorrectAnswers: bool = True


class QuizCreate(BaseModel):
    title: str = "Daily Quiz"
    description: str = ""
    scheduledAt: Optional[str] = None  # ISO-8601; next daily slot when omitted
    timePerQuestion: float = Field(default=15, gt=0)
    maxParticipants: int = Field(default=2000, gt=0)
    questions: List[QuestionIn] = Field(min_length=1, max_length=200)
    settings: QuizSettings = QuizSettings()


class JoinRequest(BaseModel):
    userId: str = Field(min_length=1)


class AnswerSubmit(BaseModel):
    userId: str = Field(min_length=1)
    questionIndex: int
    selectedOption: int
    clientTimestamp: Optional[int] = None


class AdminLogin(BaseModel):
    username: str
    password: str


# ============================================================================
# RESULT MODELS
# ============================================================================


class AnswerResult(BaseModel):
    accepted: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    questionIndex: Optional[int] = None
    correct: Optional[bool] = None
    pointsAwarded: int = 0
    cumulativeScore: Optional[int] = None
    timeTaken: Optional[float] = None

    @classmethod
    def rejected(cls, reason: str, question_index: Optional[int] = None) -> "AnswerResult":
        return cls(
            accepted=False,
            reason=reason,
            message=REJECT_MESSAGES.get(reason, reason),
            questionIndex=question_index,
        )


class JoinResult(BaseModel):
    accepted: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    quizId: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str) -> "JoinResult":
        return cls(accepted=False, reason=reason, message=REJECT_MESSAGES.get(reason, reason))


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")
    rank: int
    userId: str
    name: str = "Unknown"
    score: int
    correctAnswers: int = 0
    questionsAnswered: int = 0
    timeSpent: float = 0.0


class QuizOut(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    title: str
    description: str = ""
    status: str
    scheduledAt: str
    timePerQuestion: float
    totalQuestions: int
    maxParticipants: int
    currentParticipants: int = 0
    currentQuestionIndex: int = -1
    createdAt: str
    settings: Dict = {}
