"""
Display labels (pt-BR) for reconciliation enumerations, as shown to studio staff.

Presentation only; the matching engine never reads these.
"""

from typing import Dict, Optional

from reconciliation.match_policy import ParsedType, MatchStatus, MatchConfidence, TransactionType


PARSED_TYPE_LABELS: Dict[ParsedType, str] = {
    ParsedType.BALANCE: "Saldo",
    ParsedType.INVESTMENT_RETURN: "Rendimento",
    ParsedType.PIX_RECEIVED: "PIX Recebido",
    ParsedType.PIX_SENT: "PIX Enviado",
    ParsedType.CARD_RECEIVED: "Cartão Recebido",
    ParsedType.CARD_VISA_DEBIT: "Visa Débito",
    ParsedType.CARD_VISA_CREDIT: "Visa Crédito",
    ParsedType.CARD_MASTER_DEBIT: "Master Débito",
    ParsedType.CARD_MASTER_CREDIT: "Master Crédito",
    ParsedType.BOLETO_PAID: "Boleto Pago",
    ParsedType.UTILITY_PAID: "Concessionária",
    ParsedType.OTHER_CREDIT: "Crédito",
    ParsedType.OTHER_DEBIT: "Débito",
}

TRANSACTION_TYPE_LABELS: Dict[TransactionType, str] = {
    TransactionType.CREDIT: "Crédito",
    TransactionType.DEBIT: "Débito",
}

MATCH_STATUS_LABELS: Dict[MatchStatus, str] = {
    MatchStatus.UNMATCHED: "Pendente",
    MatchStatus.SUGGESTED: "Verificar",
    MatchStatus.AUTO_MATCHED: "Vinculado",
    MatchStatus.MANUAL_MATCHED: "Vinculado",
    MatchStatus.IGNORED: "Ignorado",
}

CONFIDENCE_LABELS: Dict[MatchConfidence, str] = {
    MatchConfidence.HIGH: "Alta",
    MatchConfidence.MEDIUM: "Média",
    MatchConfidence.LOW: "Baixa",
    MatchConfidence.MANUAL: "Manual",
}


def parsed_type_label(parsed_type: Optional[str], transaction_type: Optional[str] = None) -> Optional[str]:
    """Subtype label, falling back to the credit/debit label for unknown subtypes."""
    parsed = ParsedType.parse(parsed_type)
    if parsed is not None:
        return PARSED_TYPE_LABELS[parsed]
    if transaction_type in {t.value for t in TransactionType}:
        return TRANSACTION_TYPE_LABELS[TransactionType(transaction_type)]
    return parsed_type


def match_status_label(match_status: Optional[str]) -> Optional[str]:
    try:
        return MATCH_STATUS_LABELS[MatchStatus(match_status)]
    except ValueError:
        return match_status


def confidence_label(confidence: Optional[str]) -> Optional[str]:
    if not confidence:
        return None
    try:
        return CONFIDENCE_LABELS[MatchConfidence(confidence)]
    except ValueError:
        return confidence
