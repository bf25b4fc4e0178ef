"""Customer identity resolution.

Maps a phone number, plus an optional contact name and email, to a Customer.

Resolution order:
1. Exact match on the primary phone (confidence 1.0)
2. Exact match on the alternate phone (confidence 0.95)
3. Fuzzy name/email match, scored and thresholded (when enabled)
4. Create a new customer (when allowed)

Inactive customers never match.

Usage:
    resolver = IdentityResolver(db=session)
    result = resolver.resolve_customer("(555) 123-4567", name="Jane Doe")
    if result.customer is not None:
        print(result.match_type, result.confidence, result.reasoning)
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from callbridge_core.domain.models import Customer
from callbridge_core.domain.services.phone import normalize_phone

logger = logging.getLogger(__name__)

PRIMARY_PHONE_CONFIDENCE = 1.0
ALTERNATE_PHONE_CONFIDENCE = 0.95

PLACEHOLDER_FIRST_NAME = "Unknown"
PLACEHOLDER_LAST_NAME = "Customer"

NAME_CANDIDATE_LIMIT = 5
EMAIL_CANDIDATE_LIMIT = 3
MAX_ALTERNATIVE_MATCHES = 3


# =============================================================================
# DATA STRUCTURES
# =============================================================================


class MatchType(str):
    """How a customer was resolved."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    CREATED = "created"
    NONE = "none"


@dataclass
class MatchWeights:
    """Scores contributed by each fuzzy signal.

    Each signal scores at most its best weight and the signals present are
    averaged, so the maximum fuzzy confidence equals the largest weight.
    """

    exact_name: float = 0.5
    partial_name: float = 0.3
    token_overlap: float = 0.4
    exact_email: float = 0.5
    partial_email: float = 0.3


@dataclass
class CustomerMatchResult:
    """Outcome of a customer resolution."""

    customer: Optional[Customer]
    match_type: str
    confidence: float
    reasoning: str
    alternative_matches: list[Customer] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "customer_id": self.customer.id if self.customer is not None else None,
            "match_type": self.match_type,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "alternative_match_ids": [c.id for c in self.alternative_matches],
        }


# =============================================================================
# SCORING
# =============================================================================


def score_candidate(
    customer: Customer,
    name: Optional[str] = None,
    email: Optional[str] = None,
    weights: Optional[MatchWeights] = None,
) -> float:
    """Score a candidate customer against a contact name and email.

    Args:
        customer: The candidate.
        name: Contact name from the message, if any.
        email: Contact email from the message, if any.
        weights: Signal weights; defaults to MatchWeights().

    Returns:
        The average score over the signals present, 0.0 when none apply.
    """
    weights = weights or MatchWeights()
    total = 0.0
    signals = 0

    if name:
        full_name = f"{customer.first_name} {customer.last_name}".lower()
        search_name = name.strip().lower()

        if full_name == search_name:
            total += weights.exact_name
        elif search_name in full_name or full_name in search_name:
            total += weights.partial_name
        else:
            tokens = search_name.split()
            if tokens:
                hits = sum(1 for token in tokens if token in full_name)
                total += (hits / len(tokens)) * weights.token_overlap
        signals += 1

    if email and customer.email:
        candidate_email = customer.email.lower()
        search_email = email.strip().lower()

        if candidate_email == search_email:
            total += weights.exact_email
        elif search_email in candidate_email:
            total += weights.partial_email
        signals += 1

    return total / signals if signals else 0.0


# =============================================================================
# SERVICE
# =============================================================================


class IdentityResolver:
    """Resolves phone numbers to customer records."""

    def __init__(self, db: Session, weights: Optional[MatchWeights] = None):
        """Initialize the resolver.

        Args:
            db: SQLAlchemy database session.
            weights: Fuzzy match weights.
        """
        self.db = db
        self.weights = weights or MatchWeights()

    def resolve_customer(
        self,
        phone: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        create_if_missing: bool = True,
        fuzzy_match: bool = True,
        min_confidence: float = 0.8,
    ) -> CustomerMatchResult:
        """Find or create the customer behind a phone number.

        Args:
            phone: Phone number in any common format.
            name: Optional contact name.
            email: Optional contact email.
            create_if_missing: Create a customer when nothing matches.
            fuzzy_match: Try name/email matching after the phone lookups.
            min_confidence: Minimum fuzzy score to accept a match.

        Returns:
            The match result; customer is None only for match type "none".

        Raises:
            InvalidPhoneNumberError: If the phone number has no digits.
        """
        normalized = normalize_phone(phone)

        customer = self._find_active(Customer.phone == normalized)
        if customer is not None:
            return CustomerMatchResult(
                customer=customer,
                match_type=MatchType.EXACT,
                confidence=PRIMARY_PHONE_CONFIDENCE,
                reasoning="Exact phone number match",
            )

        customer = self._find_active(Customer.alternate_phone == normalized)
        if customer is not None:
            return CustomerMatchResult(
                customer=customer,
                match_type=MatchType.EXACT,
                confidence=ALTERNATE_PHONE_CONFIDENCE,
                reasoning="Match on alternate phone number",
            )

        alternatives: list[Customer] = []
        if fuzzy_match and (name or email):
            fuzzy = self._fuzzy_match(name, email, min_confidence)
            if fuzzy.customer is not None:
                return fuzzy
            alternatives = fuzzy.alternative_matches

        if create_if_missing:
            customer = self._create_customer(normalized, name, email)
            return CustomerMatchResult(
                customer=customer,
                match_type=MatchType.CREATED,
                confidence=1.0,
                reasoning="New customer created from phone number",
                alternative_matches=alternatives,
            )

        return CustomerMatchResult(
            customer=None,
            match_type=MatchType.NONE,
            confidence=0.0,
            reasoning="No matching customer found",
            alternative_matches=alternatives,
        )

    def _find_active(self, criterion) -> Optional[Customer]:
        return (
            self.db.query(Customer)
            .filter(criterion, Customer.is_active.is_(True))
            .order_by(Customer.id)
            .first()
        )

    def _fuzzy_candidates(self, name: Optional[str], email: Optional[str]) -> list[Customer]:
        candidates: dict[int, Customer] = {}

        if name:
            tokens = name.strip().lower().split()
            if tokens:
                first, last = tokens[0], tokens[-1]
                rows = (
                    self.db.query(Customer)
                    .filter(
                        Customer.is_active.is_(True),
                        or_(
                            Customer.first_name.ilike(f"%{first}%"),
                            Customer.last_name.ilike(f"%{last}%"),
                        ),
                    )
                    .order_by(Customer.id)
                    .limit(NAME_CANDIDATE_LIMIT)
                    .all()
                )
                for row in rows:
                    candidates.setdefault(row.id, row)

        if email:
            rows = (
                self.db.query(Customer)
                .filter(
                    Customer.is_active.is_(True),
                    Customer.email.ilike(f"%{email.strip()}%"),
                )
                .order_by(Customer.id)
                .limit(EMAIL_CANDIDATE_LIMIT)
                .all()
            )
            for row in rows:
                candidates.setdefault(row.id, row)

        return list(candidates.values())

    def _fuzzy_match(
        self, name: Optional[str], email: Optional[str], min_confidence: float
    ) -> CustomerMatchResult:
        candidates = self._fuzzy_candidates(name, email)
        scored = sorted(
            ((score_candidate(c, name, email, self.weights), c) for c in candidates),
            key=lambda pair: pair[0],
            reverse=True,
        )

        if scored and scored[0][0] >= min_confidence:
            confidence, best = scored[0]
            signal = "name" if name else "email"
            return CustomerMatchResult(
                customer=best,
                match_type=MatchType.FUZZY,
                confidence=confidence,
                reasoning=f"Fuzzy match on {signal} similarity",
                alternative_matches=[c for _, c in scored[1 : 1 + MAX_ALTERNATIVE_MATCHES]],
            )

        return CustomerMatchResult(
            customer=None,
            match_type=MatchType.NONE,
            confidence=0.0,
            reasoning="No fuzzy match above confidence threshold",
            alternative_matches=[c for _, c in scored[:MAX_ALTERNATIVE_MATCHES]],
        )

    def _create_customer(
        self, phone: str, name: Optional[str], email: Optional[str]
    ) -> Customer:
        parts = name.split() if name else []
        first_name = parts[0] if parts else PLACEHOLDER_FIRST_NAME
        last_name = " ".join(parts[1:]) or PLACEHOLDER_LAST_NAME

        customer = Customer(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            is_active=True,
            notes="Created automatically from an imported message",
        )
        self.db.add(customer)
        self.db.flush()

        logger.info(f"Created customer {customer.id} for phone {phone}")
        return customer
