# llm/profile_extractor.py
"""
Profile Extractor
Rule-based extraction of travel-profile fields from Brazilian Portuguese
chat messages:
- Origin city and airport (IATA)
- Budget in reais (stored as integer cents)
- Preferred activities
- Trip purpose

Used by the offline interviewer and as a deterministic fallback when no
LLM is configured. Matching is accent- and case-insensitive.
"""

import re
from typing import Dict, List, Optional, Tuple

from loguru import logger

from ..schemas.chat_schemas import CollectedData, ProfileUpdate
from ..utils.chat_helpers import parse_brl_amount, strip_accents


class ProfileExtractor:
    """
    Extracts a partial travel profile from one user message.
    Only fields actually mentioned are set; everything else stays absent.
    """

    def __init__(self):
        # Brazilian cities -> (display name, airport code)
        self.cities: Dict[str, Tuple[str, str]] = {
            "sao paulo": ("São Paulo", "GRU"), "sampa": ("São Paulo", "GRU"), "guarulhos": ("São Paulo", "GRU"),
            "rio de janeiro": ("Rio de Janeiro", "GIG"), "rio": ("Rio de Janeiro", "GIG"),
            "brasilia": ("Brasília", "BSB"),
            "belo horizonte": ("Belo Horizonte", "CNF"), "bh": ("Belo Horizonte", "CNF"),
            "salvador": ("Salvador", "SSA"),
            "recife": ("Recife", "REC"),
            "fortaleza": ("Fortaleza", "FOR"),
            "porto alegre": ("Porto Alegre", "POA"),
            "curitiba": ("Curitiba", "CWB"),
            "florianopolis": ("Florianópolis", "FLN"), "floripa": ("Florianópolis", "FLN"),
            "manaus": ("Manaus", "MAO"),
            "belem": ("Belém", "BEL"),
            "natal": ("Natal", "NAT"),
            "maceio": ("Maceió", "MCZ"),
            "goiania": ("Goiânia", "GYN"),
            "campinas": ("Campinas", "VCP"),
            "vitoria": ("Vitória", "VIX"),
            "joao pessoa": ("João Pessoa", "JPA"),
            "porto seguro": ("Porto Seguro", "BPS"),
            "foz do iguacu": ("Foz do Iguaçu", "IGU"),
            "cuiaba": ("Cuiabá", "CGB"),
            "campo grande": ("Campo Grande", "CGR"),
            "sao luis": ("São Luís", "SLZ"),
            "teresina": ("Teresina", "THE"),
            "aracaju": ("Aracaju", "AJU"),
        }
        self.airport_names: Dict[str, str] = {}
        for name, code in self.cities.values():
            self.airport_names.setdefault(code, name)
        # Longest names first so "rio de janeiro" wins over "rio"
        self._city_keys = sorted(self.cities, key=len, reverse=True)

        # Origin cue patterns (accent-folded text)
        self.origin_patterns = [
            r"(?:saindo|partindo|sair|partir|embarcando|embarcar|viajar|voar|vou)\s+(?:de|do|da)\s+([a-z ]+)",
            r"(?:moro|estou|resido|vivo)\s+(?:em|no|na)\s+([a-z ]+)",
            r"\bsou\s+(?:de|do|da)\s+([a-z ]+)",
            r"\b(?:de|do|da)\s+([a-z ]+)",
        ]

        # Budget patterns: (number, optional multiplier)
        self.budget_patterns = [
            r"r\$\s*(\d[\d.,]*)\s*(mil|k)?",
            r"(\d[\d.,]*)\s*(mil|k)?\s*(?:reais|real)\b",
            r"(?:orcamento|gastar|ate|budget)\D{0,20}?(\d[\d.,]*)\s*(mil|k)?",
        ]

        # Activity patterns
        self.activity_patterns: Dict[str, List[str]] = {
            "praia": [r"\bpraias?\b", r"\blitoral\b", r"\bmar\b"],
            "trilhas": [r"\btrilhas?\b", r"\btrekking\b", r"\bcaminhadas?\b", r"\bhiking\b"],
            "montanha": [r"\bmontanhas?\b", r"\bserras?\b"],
            "natureza": [r"\bnatureza\b", r"\bcachoeiras?\b", r"\becoturismo\b"],
            "cultura": [r"\bcultura", r"\bmuseus?\b", r"\bhistori", r"\bteatros?\b"],
            "gastronomia": [r"\bgastronomi", r"\bculinaria\b", r"\bcomidas?\b", r"\brestaurantes?\b"],
            "vida noturna": [r"\bbaladas?\b", r"\bvida noturna\b", r"\bbares\b", r"\bfestas?\b"],
            "aventura": [r"\baventuras?\b", r"\bradica(?:l|is)\b", r"\brapel\b", r"\brafting\b"],
            "compras": [r"\bcompras\b", r"\bshoppings?\b"],
            "relaxamento": [r"\brelax", r"\bdescans", r"\bspa\b"],
            "mergulho": [r"\bmergulh", r"\bsnorkel"],
        }

        # Purpose patterns (first match wins)
        self.purpose_patterns: Dict[str, List[str]] = {
            "lazer": [r"\blazer\b", r"\bferias\b", r"\bpasseio\b", r"\bturismo\b", r"\bdiversao\b"],
            "trabalho": [r"\btrabalho\b", r"\bnegocios?\b", r"\breuniao\b", r"\bcongresso\b", r"\bconferencia\b", r"\bcorporativ"],
            "família": [r"\bfamilia\b", r"\bparentes\b", r"\bfilhos\b"],
            "lua de mel": [r"\blua de mel\b", r"\bromantic", r"\bcasal\b"],
            "estudos": [r"\bestud", r"\bcursos?\b", r"\bintercambio\b"],
        }

    def parse(
        self,
        message: str,
        context: Optional[CollectedData] = None,
        expecting: Optional[str] = None,
    ) -> ProfileUpdate:
        """
        Extract the profile fields mentioned in a message

        Args:
            message: Raw user message
            context: Profile collected so far
            expecting: Key of the question the user is answering
                (origin, budget, activities, purpose); lets bare answers
                like "Recife" or "5000" count

        Returns:
            ProfileUpdate with only the mentioned fields set
        """
        folded = strip_accents(message).strip()
        origin_name, origin_iata = self._extract_origin(message, folded, expecting, context) or (None, None)

        update = ProfileUpdate(
            origin_name=origin_name,
            origin_iata=origin_iata,
            budget_in_brl=self._extract_budget(folded, expecting),
            activities=self._extract_activities(folded),
            purpose=self._extract_purpose(folded),
        )

        logger.info(
            f"Extracted profile: origin={update.origin_iata}, budget={update.budget_in_brl}, "
            f"activities={update.activities}, purpose={update.purpose}"
        )
        return update

    def _city_at_start(self, tail: str) -> Optional[Tuple[str, str]]:
        tail = tail.strip()
        for key in self._city_keys:
            if tail.startswith(key) and (len(tail) == len(key) or not tail[len(key)].isalpha()):
                return self.cities[key]
        return None

    def _find_city(self, folded: str) -> Optional[Tuple[str, str]]:
        for key in self._city_keys:
            if re.search(rf"\b{re.escape(key)}\b", folded):
                return self.cities[key]
        return None

    def _extract_origin(
        self,
        message: str,
        folded: str,
        expecting: Optional[str],
        context: Optional[CollectedData],
    ) -> Optional[Tuple[str, str]]:
        """Extract origin city and airport"""
        for pattern in self.origin_patterns:
            for match in re.finditer(pattern, folded):
                city = self._city_at_start(match.group(1))
                if city:
                    return city

        # Airport code typed directly, e.g. "GRU"
        for code in re.findall(r"\b([A-Z]{3})\b", message):
            if code in self.airport_names:
                return self.airport_names[code], code

        # Bare city name as an answer to the origin question
        already_known = context is not None and context.origin_iata
        if expecting == "origin" or (expecting is None and not already_known):
            return self._find_city(folded)

        return None

    def _extract_budget(self, folded: str, expecting: Optional[str]) -> Optional[int]:
        """Extract budget amount in cents"""
        patterns = list(self.budget_patterns)
        if expecting == "budget":
            patterns.append(r"\b(\d[\d.,]*)\s*(mil|k)?\b")

        for pattern in patterns:
            match = re.search(pattern, folded)
            if match:
                cents = parse_brl_amount(match.group(1), match.group(2))
                if cents:
                    return cents
        return None

    def _extract_activities(self, folded: str) -> List[str]:
        activities = []
        for activity, patterns in self.activity_patterns.items():
            if any(re.search(pattern, folded) for pattern in patterns):
                activities.append(activity)
        return activities

    def _extract_purpose(self, folded: str) -> Optional[str]:
        for purpose, patterns in self.purpose_patterns.items():
            if any(re.search(pattern, folded) for pattern in patterns):
                return purpose
        return None


# ============================================
# Global Instance
# ============================================

profile_extractor = ProfileExtractor()
