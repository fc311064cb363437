"""
Langchain Prompt Templates
System prompt for the travel-profile interview, greeting and follow-up
questions, and the prompt context handed to completion sources.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from langchain_core.prompts import PromptTemplate

from ..algorithms.profile_accumulator import next_question_key
from ..schemas.chat_schemas import ChatSession, CollectedData, MessageRole

# ============================================
# Fixed assistant texts (pt-BR)
# ============================================

GREETING = (
    "Olá! Sou seu assistente de viagem da AIR Discovery e estou aqui para te ajudar "
    "a encontrar o destino perfeito! 🌍✈️ Para começar, me conta: de qual cidade você vai partir?"
)

FOLLOW_UP_QUESTIONS: Dict[str, str] = {
    "origin": "De qual cidade você vai partir?",
    "budget": "Qual é o seu orçamento total para a viagem, em reais?",
    "activities": "Que tipo de atividades você mais gosta de fazer quando está de férias?",
    "purpose": "Qual é o principal objetivo da viagem: lazer, trabalho, família, estudos ou lua de mel?",
}

CLOSING_MESSAGE = "Conversa encerrada. Obrigado por planejar sua viagem com a AIR Discovery!"

# ============================================
# Interview System Prompt
# ============================================

SYSTEM_PROMPT = PromptTemplate(
    input_variables=["collected_data", "next_question", "max_questions"],
    template="""Você é o assistente de viagens da AIR Discovery. Entreviste o usuário em português do Brasil para montar o perfil de viagem e recomendar um destino no Brasil.

Colete, uma pergunta por vez, nesta ordem:
1. origin: cidade de partida e o código IATA do aeroporto (ex.: São Paulo -> GRU)
2. budget: orçamento total em reais
3. activities: atividades preferidas (ex.: praia, trilhas, cultura, gastronomia)
4. purpose: objetivo da viagem (lazer, trabalho, família, estudos, lua de mel)

Faça no máximo {max_questions} perguntas no total.

REGRA MAIS IMPORTANTE - PRESERVAÇÃO DE DADOS:
Dados Já Coletados:
{collected_data}
COPIE TODOS esses dados para data_collected. NUNCA apague ou substitua dados já coletados por null.

Próxima pergunta sugerida: {next_question}

Formato da resposta: escreva primeiro a mensagem para o usuário e, no final, um único objeto JSON:
{{
  "conversation_stage": "collecting_origin" | "collecting_budget" | "collecting_activities" | "collecting_purpose" | "recommendation_ready",
  "data_collected": {{
    "origin_name": string | null,
    "origin_iata": string | null,
    "budget_in_brl": inteiro em centavos | null,
    "activities": [string],
    "purpose": string | null,
    "hobbies": [string],
    "destination_name": string | null,
    "destination_iata": string | null
  }},
  "next_question_key": "origin" | "budget" | "activities" | "purpose" | null,
  "assistant_message": string,
  "is_final_recommendation": boolean
}}

O orçamento vai em centavos: R$ 3.000 = 300000.
Quando os quatro itens estiverem coletados, recomende um destino brasileiro, preencha destination_name e destination_iata, use "recommendation_ready" e is_final_recommendation = true."""
)

RECOMMENDATION_MESSAGE = PromptTemplate(
    input_variables=["destination", "activities", "budget", "purpose"],
    template=(
        "Perfeito, já tenho tudo o que preciso! Para uma viagem de {purpose} com foco em "
        "{activities} e orçamento de {budget}, recomendo {destination}. 🌴"
    ),
)


# ============================================
# Prompt context
# ============================================

@dataclass
class PromptContext:
    """Everything a completion source needs for one turn"""
    session_id: str
    system_prompt: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    collected_data: CollectedData = field(default_factory=CollectedData)
    latest_user_message: Optional[str] = None

    def to_chat_messages(self) -> List[Dict[str, str]]:
        """OpenAI/Ollama chat format with the system prompt first"""
        return [{"role": "system", "content": self.system_prompt}] + list(self.messages)


def build_prompt_context(session: ChatSession, history_window: int = 20, max_questions: int = 8) -> PromptContext:
    """
    Build the prompt for the next assistant turn

    Args:
        session: Session with the new user message already appended
        history_window: Number of most recent messages sent to the model
        max_questions: Question budget mentioned in the system prompt

    Returns:
        PromptContext
    """
    key = next_question_key(session.collected_data)
    system_prompt = SYSTEM_PROMPT.format(
        collected_data=json.dumps(session.collected_data.model_dump(), ensure_ascii=False, indent=2),
        next_question=FOLLOW_UP_QUESTIONS[key] if key else "nenhuma, recomende o destino",
        max_questions=max_questions,
    )

    history = [m for m in session.messages if m.role != MessageRole.SYSTEM][-history_window:]
    latest_user = session.last_message(MessageRole.USER)

    return PromptContext(
        session_id=session.session_id,
        system_prompt=system_prompt,
        messages=[{"role": m.role.value, "content": m.content} for m in history],
        collected_data=session.collected_data.model_copy(deep=True),
        latest_user_message=latest_user.content if latest_user else None,
    )
