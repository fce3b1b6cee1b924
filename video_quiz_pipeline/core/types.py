from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

QUESTION_TYPES = ("multiple-choice", "true-false", "hotspot", "matching", "sequencing")
BLOOM_LEVELS = ("remember", "understand", "apply", "analyze", "evaluate", "create")
DIFFICULTY_LEVELS = ("beginner", "intermediate", "advanced")
EVENT_TYPES = (
    "concept_introduction",
    "example_demonstration",
    "summary",
    "transition",
    "visual_highlight",
    "code_display",
    "diagram_explanation",
    "other",
)
QUALITY_DIMENSIONS = (
    "educational_value",
    "clarity_and_precision",
    "cognitive_appropriateness",
    "bloom_alignment",
    "misconception_handling",
    "explanation_quality",
)


@dataclass
class TranscriptSegment:
    timestamp: int
    text: str
    end_timestamp: Optional[int] = None
    visual_description: str = ""
    is_salient_event: bool = False
    event_type: Optional[str] = None


@dataclass
class KeyConcept:
    concept: str
    first_mentioned: int
    explanation_timestamps: List[int] = field(default_factory=list)


@dataclass
class VideoTranscript:
    full_transcript: List[TranscriptSegment]
    key_concepts_timeline: List[KeyConcept] = field(default_factory=list)
    video_summary: str = ""

    @property
    def start(self) -> int:
        if not self.full_transcript:
            return 0
        return self.full_transcript[0].timestamp

    @property
    def duration(self) -> int:
        if not self.full_transcript:
            return 0
        last = self.full_transcript[-1]
        return last.end_timestamp if last.end_timestamp is not None else last.timestamp


@dataclass
class TranscriptReference:
    start_timestamp: int
    end_timestamp: int
    relevant_text: str = ""
    visual_context: str = ""


@dataclass
class QuestionPlan:
    question_id: str
    timestamp: int
    question_type: str
    learning_objective: str
    content_context: str
    key_concepts: List[str]
    bloom_level: str
    educational_rationale: str
    planning_notes: str = ""
    difficulty_level: str = "intermediate"
    estimated_time_seconds: Optional[int] = None
    transcript_reference: Optional[TranscriptReference] = None
    # Visual (hotspot) plans only
    frame_timestamp: Optional[float] = None
    target_objects: List[str] = field(default_factory=list)
    visual_learning_objective: str = ""
    question_context: str = ""


@dataclass
class BoundingBox:
    label: str
    x: float
    y: float
    width: float
    height: float
    is_correct_answer: bool = False
    confidence_score: float = 0.8


@dataclass
class MatchingPair:
    left: str
    right: str


@dataclass
class QuestionBase:
    question_id: str
    timestamp: int
    type: str
    question: str
    explanation: str
    bloom_level: str
    educational_rationale: str


@dataclass
class MultipleChoiceQuestion(QuestionBase):
    options: List[str]
    correct_answer: int
    misconception_analysis: Dict[str, str] = field(default_factory=dict)


@dataclass
class TrueFalseQuestion(QuestionBase):
    correct_answer: bool
    concept_analysis: Dict[str, str] = field(default_factory=dict)
    misconception_addressed: str = ""


@dataclass
class HotspotQuestion(QuestionBase):
    target_objects: List[str]
    frame_timestamp: float
    bounding_boxes: List[BoundingBox]
    question_context: str = ""
    visual_learning_objective: str = ""
    distractor_guidance: Dict[str, Any] = field(default_factory=dict)
    video_dimensions: Dict[str, int] = field(
        default_factory=lambda: {"width": 1000, "height": 1000}
    )


@dataclass
class MatchingQuestion(QuestionBase):
    matching_pairs: List[MatchingPair]
    relationship_analysis: Dict[str, Any] = field(default_factory=dict)
    relationship_type: str = ""


@dataclass
class SequencingQuestion(QuestionBase):
    sequence_items: List[str]
    sequence_analysis: Dict[str, Any] = field(default_factory=dict)
    sequence_type: str = ""


GeneratedQuestion = Union[
    MultipleChoiceQuestion,
    TrueFalseQuestion,
    HotspotQuestion,
    MatchingQuestion,
    SequencingQuestion,
]


@dataclass
class QualityAssessment:
    score: int
    strengths: List[str] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)


@dataclass
class QualityDimension:
    score: float
    assessment: str
    evidence: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)


@dataclass
class QualityVerificationResult:
    question_id: str
    overall_score: float
    quality_dimensions: Dict[str, QualityDimension]
    overall_assessment: str
    specific_strengths: List[str]
    improvement_recommendations: List[str]
    verification_confidence: float
    meets_quality_threshold: bool
    model_reported_threshold: Optional[bool] = None


@dataclass
class ProviderConfig:
    preferred_provider: str = "openai"
    fallback_provider: str = "gemini"
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    models: Dict[str, str] = field(default_factory=dict)
    api_key_envs: Dict[str, str] = field(default_factory=dict)


@dataclass
class GenerationConfig:
    temperature: float
    max_output_tokens: int
    top_k: int
    top_p: float
    model: Optional[str] = None
    # provider the model override belongs to
    model_provider: str = "gemini"

    def as_params(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "top_k": self.top_k,
            "top_p": self.top_p,
        }


@dataclass
class VideoInput:
    file_uri: str
    start_offset: Optional[float] = None
    end_offset: Optional[float] = None


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class GatewayResult:
    content: Dict[str, Any]
    usage: TokenUsage
    provider_used: str
    model_used: str
    latency_ms: int = 0
    provider_errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class PlanningResult:
    transcript: VideoTranscript
    question_plans: List[QuestionPlan]
    planning_metadata: Dict[str, Any] = field(default_factory=dict)
    errors: List[QuestionError] = field(default_factory=list)


@dataclass
class QuestionError:
    question_id: str
    error_message: str
    question_type: str = ""
    stage: str = "question_generation"


@dataclass
class GenerationMetadata:
    requested_questions: int
    successful_generations: int
    failed_generations: int
    generation_time_ms: int
    type_breakdown: Dict[str, int] = field(default_factory=dict)
    cancelled: int = 0


@dataclass
class GenerationResult:
    generated_questions: List[GeneratedQuestion]
    errors: List[QuestionError]
    generation_metadata: GenerationMetadata


@dataclass
class VerificationResult:
    results: List[QualityVerificationResult]
    errors: List[QuestionError] = field(default_factory=list)
    verification_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineRequest:
    course_id: str
    video_source_url: str
    max_questions: Optional[int] = None
    difficulty_level: Optional[str] = None
    focus_topics: List[str] = field(default_factory=list)
    enable_visual_questions: bool = True
    enable_quality_verification: bool = False
    question_distribution: Optional[Dict[str, float]] = None
