"""
Query expansion for retrieval: term extraction, domain synonyms, concept
detection and conversation-context terms.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

MIN_TERM_LENGTH = 4
MAX_SYNONYMS_PER_TERM = 2
CONTEXT_MESSAGES = 2
CONTEXT_TERMS_PER_MESSAGE = 3

# Domain synonym table for supportive-conversation queries
MENTAL_HEALTH_SYNONYMS: Dict[str, List[str]] = {
    "sad": ["depressed", "unhappy", "melancholy", "blue", "down", "sorrowful"],
    "depressed": ["sad", "despondent", "hopeless", "dejected", "gloomy", "miserable"],
    "anxiety": ["worry", "nervousness", "unease", "fear", "apprehension", "stress"],
    "stressed": ["pressured", "tense", "overwhelmed", "strained", "taxed"],
    "angry": ["upset", "irritated", "frustrated", "furious", "enraged", "hostile"],
    "trauma": ["ptsd", "traumatic experience", "distressing event", "psychological injury"],
    "therapy": ["counseling", "treatment", "psychotherapy", "mental health support"],
    "suicidal": ["self-harm", "wanting to die", "ending life", "suicide"],
    "addiction": ["substance abuse", "dependency", "substance use disorder", "habit"],
    "alcohol": ["drinking", "alcoholism", "liquor", "booze"],
    "drug": ["narcotic", "substance", "medication", "pill"],
    "relationship": ["marriage", "partnership", "dating", "couple"],
}

STOP_WORDS = frozenset([
    "i", "me", "my", "myself", "we", "our", "ours", "ourselves",
    "you", "your", "yours", "yourself", "yourselves",
    "he", "him", "his", "himself", "she", "her", "hers", "herself",
    "it", "its", "itself", "they", "them", "their", "theirs", "themselves",
    "what", "which", "who", "whom", "this", "that", "these", "those",
    "am", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "having", "do", "does", "did", "doing",
    "a", "an", "the", "and", "but", "if", "or", "because", "as",
    "until", "while", "of", "at", "by", "for", "with", "about", "against",
    "between", "into", "through", "during", "before", "after", "above",
    "below", "to", "from", "up", "down", "in", "out", "on", "off",
    "over", "under", "again", "further", "then", "once", "here", "there",
    "when", "where", "why", "how", "all", "any", "both", "each", "few",
    "more", "most", "other", "some", "such", "no", "nor", "not", "only",
    "own", "same", "so", "than", "too", "very", "can", "will", "just", "don",
    "should", "now", "also", "get", "got", "like", "make", "way", "even",
    "well", "back", "much", "many",
])

CONCEPT_PATTERNS = [
    ("depression", [
        re.compile(r"depress(ed|ion|ive)?", re.I),
        re.compile(r"feeling (sad|down|low|blue)", re.I),
        re.compile(r"(lack|no) (energy|motivation)", re.I),
        re.compile(r"don't (feel|want|care)", re.I),
    ]),
    ("anxiety", [
        re.compile(r"anxi(ety|ous)", re.I),
        re.compile(r"(nervous|worried|stress)", re.I),
        re.compile(r"panic attack", re.I),
        re.compile(r"(fear|afraid|scared)", re.I),
    ]),
    ("trauma", [
        re.compile(r"trauma", re.I),
        re.compile(r"ptsd", re.I),
        re.compile(r"(flash|night)mares", re.I),
        re.compile(r"bad (memory|experience)", re.I),
        re.compile(r"something happened", re.I),
    ]),
    ("self-esteem", [
        re.compile(r"self(-|\s)?(esteem|worth|image|confidence)", re.I),
        re.compile(r"feel(ing)? (bad|ugly|worthless|unworthy) about (myself|me)", re.I),
        re.compile(r"hate (myself|my body)", re.I),
    ]),
    ("grief", [
        re.compile(r"grief|grieving", re.I),
        re.compile(r"loss of", re.I),
        re.compile(r"\b(lost|died|passed away|death)\b", re.I),
        re.compile(r"cope with", re.I),
    ]),
    ("relationship issues", [
        re.compile(r"(relationship|marriage) (problem|issue|trouble)", re.I),
        re.compile(r"(partner|spouse|boyfriend|girlfriend)", re.I),
        re.compile(r"(break(-|\s)?up|divorce)", re.I),
    ]),
]

_WORD_SPLIT = re.compile(r"\W+")


@dataclass
class QueryExpansion:
    """Result of expanding one query."""

    original_query: str
    terms: List[str] = field(default_factory=list)
    expanded_terms: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)
    synonym_mappings: Dict[str, List[str]] = field(default_factory=dict)
    context_terms: List[str] = field(default_factory=list)

    @property
    def expanded_query(self) -> str:
        return " ".join(self.expanded_terms) if self.expanded_terms else self.original_query


def extract_terms(text: str, min_length: int = MIN_TERM_LENGTH) -> List[str]:
    """Lowercased word tokens, stop words and pure numbers removed."""
    return [
        word for word in _WORD_SPLIT.split((text or "").lower())
        if len(word) >= min_length and word not in STOP_WORDS and not word.isdigit()
    ]


def find_synonyms(term: str) -> List[str]:
    """Synonyms for a term, matching table keys by prefix in either direction."""
    if term in MENTAL_HEALTH_SYNONYMS:
        return list(MENTAL_HEALTH_SYNONYMS[term])

    for key, synonyms in MENTAL_HEALTH_SYNONYMS.items():
        if key.startswith(term) or term.startswith(key):
            return list(synonyms)
        if any(term in s or s in term for s in synonyms):
            return [s for s in synonyms + [key] if s != term]

    return []


def detect_concepts(query: str) -> List[str]:
    """Concept names whose patterns match anywhere in the query."""
    return [
        concept for concept, patterns in CONCEPT_PATTERNS
        if any(p.search(query or "") for p in patterns)
    ]


def context_terms_from_history(history: List[str], messages: int = CONTEXT_MESSAGES,
                               per_message: int = CONTEXT_TERMS_PER_MESSAGE) -> List[str]:
    """Up to `per_message` terms from each of the `messages` most recent turns, newest first."""
    terms = []
    for message in list(reversed(history or []))[:messages]:
        terms.extend(extract_terms(message)[:per_message])
    return terms


def _unique(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


class QueryExpander:
    """
    Expands queries with synonyms, concepts and context terms.

    When an embedder is supplied, candidate expansion terms are ranked by
    similarity to the query and only the best `max_expanded_terms` are kept
    beyond the original terms.
    """

    def __init__(self, embedder=None, max_expanded_terms: int = 10, min_term_length: int = MIN_TERM_LENGTH,
                 include_synonyms: bool = True, include_concepts: bool = True):
        self.embedder = embedder
        self.max_expanded_terms = max_expanded_terms
        self.min_term_length = min_term_length
        self.include_synonyms = include_synonyms
        self.include_concepts = include_concepts

    def expand(self, query: str, history: Optional[List[str]] = None,
               include_history: bool = True) -> QueryExpansion:
        terms = _unique(extract_terms(query, self.min_term_length))
        candidates = list(terms)
        synonym_mappings: Dict[str, List[str]] = {}
        concepts: List[str] = []

        if self.include_synonyms:
            for term in terms:
                synonyms = find_synonyms(term)
                if synonyms:
                    synonym_mappings[term] = synonyms
                    candidates.extend(synonyms[:MAX_SYNONYMS_PER_TERM])

        if self.include_concepts and terms:
            concepts = detect_concepts(query)
            candidates.extend(concepts)

        context = context_terms_from_history(history) if include_history else []
        candidates.extend(context)

        expanded = _unique(candidates)
        if self.embedder is not None and len(expanded) > len(terms):
            expanded = self._rank_by_similarity(query, terms, expanded)

        return QueryExpansion(
            original_query=query,
            terms=terms,
            expanded_terms=expanded,
            concepts=concepts,
            synonym_mappings=synonym_mappings,
            context_terms=context,
        )

    def _rank_by_similarity(self, query: str, terms: List[str], candidates: List[str]) -> List[str]:
        from ..vector.similarity import cosine_similarity

        query_vector = self.embedder.embed(query)
        extras = [c for c in candidates if c not in terms]
        vectors = self.embedder.embed_batch(extras)
        scored = sorted(
            zip(extras, (cosine_similarity(query_vector, v) for v in vectors)),
            key=lambda item: item[1],
            reverse=True,
        )
        selected = [term for term, _ in scored[: self.max_expanded_terms]]
        return _unique(terms + selected)
