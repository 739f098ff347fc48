"""
Bounded conversation history and the persona prompt built from it.
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


ROLE_LABELS = {
    Role.CALLER: "직원",
    Role.ASSISTANT: "손님(AI)",
}


@dataclass(frozen=True)
class Turn:
    """A single line of the call transcript."""
    role: Role
    content: str


class ConversationHistory:
    """Keeps the most recent ``limit`` turns, oldest first."""

    def __init__(self, limit: int = 20):
        if limit < 1:
            raise ValueError("history limit must be positive")
        self.limit = limit
        self._turns: deque[Turn] = deque(maxlen=limit)

    def append(self, role: Role, content: str) -> Turn:
        turn = Turn(role=Role(role), content=content)
        self._turns.append(turn)
        return turn

    def turns(self) -> list[Turn]:
        return list(self._turns)

    def transcript(self) -> str:
        """Render the history as ``label: content`` lines."""
        return "\n".join(
            f"{ROLE_LABELS[turn.role]}: {turn.content}" for turn in self._turns
        )

    def __len__(self) -> int:
        return len(self._turns)


PERSONA_PROMPT = """너는 지금 전화를 건 "손님"의 역할입니다.
너는 가게, 식당, 병원, 전시회 등에 예약 또는 문의를 하고 있습니다.

### 반드시 지킬 규칙
1) 너는 손님이고 상대방은 직원입니다. 직원처럼 말하지 않습니다.
2) 상대방이 이미 알려준 정보는 다시 묻지 않습니다.
3) 상대방이 "예약해드리겠습니다", "처리하겠습니다", "확인했습니다"처럼 대화를 마무리하면
   "네, 감사합니다." 한 문장으로 끝냅니다.
4) 불필요한 질문, 새로운 제안은 하지 않습니다.
5) 각 답변은 짧고 명확한 한 문장입니다.
6) 이전 대화와 일관되게 답하고, 이미 한 말을 반복하지 않습니다.

### 예시
- "오늘 7시 두 명 예약 가능할까요?"
- "네, 두 명 모두 성인입니다."
- "그러면 6시로 부탁드리겠습니다."
- "네, 감사합니다."
"""


def build_prompt(history: ConversationHistory, latest_utterance: str) -> str:
    """Build the completion prompt for the customer persona."""
    return f"""{PERSONA_PROMPT}
### 입력
지금까지의 대화 기록:
{history.transcript()}

상대방이 방금 말한 내용: "{latest_utterance}"

### 출력 형식
- 손님이 다음에 할 수 있는 발화 후보를 최대 3개, JSON 문자열 배열로만 출력
- 예: ["네, 가능합니다.", "몇 시가 가능할까요?", "네, 감사합니다."]
- 추가 설명이나 해설 금지
"""


def announcement_script(intent_text: str) -> str:
    """Opening line played when an outbound call is answered."""
    return (
        f"안녕하세요. 고객님을 대신해 간단히 문의드립니다. {intent_text.strip()}. "
        "가능 여부만 알려주시면 감사하겠습니다."
    )
