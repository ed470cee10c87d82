"""Prompt templates."""

from typing import Any, Callable, Dict, List, Literal, Optional, Type
import structlog
from pydantic import BaseModel, Field, ValidationError

from .protocol.errors import InvalidParamsError
from .protocol.messages import PromptArgument, PromptDefinition

logger = structlog.get_logger()


class ExplainCalculationArguments(BaseModel):
    calculation: str = Field(description="The calculation to explain")
    level: Literal["basic", "intermediate", "advanced"] = "intermediate"


class GenerateProblemsArguments(BaseModel):
    topic: str = Field(description="The mathematical topic")
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    count: Optional[str] = Field(default="5", description="Number of problems (1-10)")


class CalculatorTutorArguments(BaseModel):
    topic: Optional[str] = Field(default=None, description="Specific topic to focus on")
    studentLevel: Literal["beginner", "intermediate", "advanced"] = "intermediate"


EXPLAIN_LEVELS = {
    "basic": "Use simple terms and break down each step clearly",
    "intermediate": "Include mathematical notation and explain properties",
    "advanced": "Discuss alternative methods, optimizations, and edge cases",
}

TUTOR_LEVELS = {
    "beginner": "Use very simple language, concrete examples, and break down concepts into tiny steps",
    "intermediate": "Use clear explanations with some mathematical terminology and visual examples",
    "advanced": "Engage with complex concepts, encourage critical thinking, and explore connections",
}


def problem_count(raw: Optional[str]) -> int:
    """Parse the requested problem count, defaulting to 5 and capping at 10."""
    try:
        count = int(str(raw).strip())
    except (TypeError, ValueError):
        return 5
    if count <= 0:
        return 5
    return min(count, 10)


def user_message(text: str) -> Dict[str, Any]:
    return {"messages": [{"role": "user", "content": {"type": "text", "text": text}}]}


def explain_calculation(args: ExplainCalculationArguments) -> Dict[str, Any]:
    return user_message(
        f'Please explain how to solve this calculation step by step: "{args.calculation}"\n'
        f"\n"
        f"Target level: {args.level}\n"
        f"- {EXPLAIN_LEVELS[args.level]}\n"
        f"\n"
        f"Format your response with:\n"
        f"1. Clear numbered steps\n"
        f"2. Mathematical reasoning for each step\n"
        f"3. Final verification of the result\n"
        f"\n"
        f"Make the explanation educational and easy to follow."
    )


def generate_problems(args: GenerateProblemsArguments) -> Dict[str, Any]:
    count = problem_count(args.count)
    return user_message(
        f'Generate {count} practice problems about "{args.topic}" at {args.difficulty} difficulty level.\n'
        "\n"
        "PEDAGOGICAL REQUIREMENTS:\n"
        "- Problems should progressively build on concepts\n"
        "- Include variety in problem types and approaches\n"
        "- Ensure problems are solvable at the specified difficulty\n"
        "- Make each problem educational and engaging\n"
        "\n"
        "FORMATTING REQUIREMENTS:\n"
        "- Number each problem clearly\n"
        "- Provide complete problem statements\n"
        "- Include an answer key with brief explanations\n"
        "- Use proper mathematical notation\n"
        "\n"
        "EXAMPLE FORMAT:\n"
        "Problems:\n"
        "1. [Problem statement with clear context]\n"
        "2. [Problem statement building on previous concepts]\n"
        "...\n"
        "\n"
        "Answer Key:\n"
        "1. [Answer with step-by-step explanation]\n"
        "2. [Answer with reasoning and method]"
    )


def calculator_tutor(args: CalculatorTutorArguments) -> Dict[str, Any]:
    topic_context = f" focusing on {args.topic}" if args.topic else ""
    return user_message(
        f"Act as a friendly and knowledgeable calculator tutor for a "
        f"{args.studentLevel}-level student{topic_context}.\n"
        "\n"
        "TUTORING FRAMEWORK:\n"
        "1. START: Begin with a warm, encouraging greeting\n"
        "2. ASSESS: Ask a simple diagnostic question to gauge understanding\n"
        "3. TEACH: Provide clear explanations adapted to their level\n"
        "4. DEMONSTRATE: Use the 'calculate' tool to show examples\n"
        "5. PRACTICE: Give them a problem to try\n"
        "6. ENCOURAGE: Provide positive reinforcement throughout\n"
        "\n"
        "LEVEL-SPECIFIC APPROACH:\n"
        f"- {TUTOR_LEVELS[args.studentLevel]}\n"
        "\n"
        "TOOL USAGE:\n"
        "- Use the 'calculate' tool to demonstrate calculations\n"
        "- Show step-by-step problem solving\n"
        "- Encourage the student to try calculations themselves\n"
        "\n"
        "Be patient, encouraging, and make mathematics engaging and accessible!"
    )


class Prompt:
    """A named prompt template with validated arguments."""

    def __init__(
        self,
        name: str,
        description: str,
        arguments_model: Type[BaseModel],
        render: Callable[[Any], Dict[str, Any]],
    ):
        self.name = name
        self.description = description
        self.arguments_model = arguments_model
        self._render = render

    def get_definition(self) -> PromptDefinition:
        arguments = [
            PromptArgument(
                name=field_name,
                description=field.description,
                required=field.is_required(),
            )
            for field_name, field in self.arguments_model.model_fields.items()
        ]
        return PromptDefinition(name=self.name, description=self.description, arguments=arguments)

    def render(self, arguments: Optional[Dict[str, str]]) -> Dict[str, Any]:
        try:
            validated = self.arguments_model.model_validate(arguments or {})
        except ValidationError as e:
            raise InvalidParamsError(
                f"Invalid arguments for prompt {self.name}",
                data={"validation_errors": [
                    {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in e.errors()
                ]},
            ) from e
        result = self._render(validated)
        result["description"] = self.description
        return result


class PromptRegistry:
    """Prompts of one engine instance."""

    def __init__(self):
        self._prompts: Dict[str, Prompt] = {}

    def register(self, prompt: Prompt) -> None:
        self._prompts[prompt.name] = prompt
        logger.debug("Prompt registered", prompt=prompt.name)

    def list_prompts(self) -> List[PromptDefinition]:
        return [p.get_definition() for p in self._prompts.values()]

    def get(self, name: str, arguments: Optional[Dict[str, str]]) -> Dict[str, Any]:
        prompt = self._prompts.get(name)
        if prompt is None:
            raise InvalidParamsError(f"Unknown prompt: {name}")
        return prompt.render(arguments)

    def clear(self) -> None:
        self._prompts.clear()


def default_prompts() -> List[Prompt]:
    return [
        Prompt(
            "explain-calculation",
            "Generates a prompt for AI to explain mathematical calculations step by step",
            ExplainCalculationArguments,
            explain_calculation,
        ),
        Prompt(
            "generate-problems",
            "Creates a prompt for AI to generate practice math problems with progressive difficulty",
            GenerateProblemsArguments,
            generate_problems,
        ),
        Prompt(
            "calculator-tutor",
            "Creates an interactive tutoring session prompt tailored to student level and topic",
            CalculatorTutorArguments,
            calculator_tutor,
        ),
    ]
