"""Server-side message catalogue for notifications (en/ar)."""

TRANSLATIONS = {
    "en": {
        "low_stock_title": "Low Stock Alert",
        "low_stock_message": (
            "{name} is low on stock. Current quantity: {quantity} {unit}, "
            "Minimum quantity: {min_quantity} {unit}"
        ),
        "payment_due_title": "Payment Due Soon",
        "payment_due_message": "Payment of {currency} {amount} for {party} is due in {days} {day_word}.",
        "payment_overdue_title": "Payment Overdue",
        "payment_overdue_message": "Payment of {currency} {amount} for {party} is overdue by {days} {day_word}.",
        "payment_received_title": "Payment Received",
        "payment_received_message": "Payment of {currency} {amount} received for transaction #{transaction_id}.",
        "day": "day",
        "days": "days",
        "unknown_party": "Unknown",
        "currency": "DH",
    },
    "ar": {
        "low_stock_title": "تنبيه انخفاض المخزون",
        "low_stock_message": (
            "{name} منخفض في المخزون. الكمية الحالية: {quantity} {unit}، "
            "الحد الأدنى للكمية: {min_quantity} {unit}"
        ),
        "payment_due_title": "استحقاق الدفع قريبًا",
        "payment_due_message": "دفعة بقيمة {amount} {currency} لـ {party} مستحقة خلال {days} {day_word}.",
        "payment_overdue_title": "دفعة متأخرة",
        "payment_overdue_message": "دفعة بقيمة {amount} {currency} لـ {party} متأخرة منذ {days} {day_word}.",
        "payment_received_title": "تم استلام دفعة",
        "payment_received_message": "تم استلام دفعة بقيمة {amount} {currency} للمعاملة رقم {transaction_id}.",
        "day": "يوم",
        "days": "أيام",
        "unknown_party": "غير معروف",
        "currency": "درهم",
    },
}

UNIT_LABELS = {
    "en": {"KG": "kg", "GRAM": "g", "PIECE": "pcs"},
    "ar": {"KG": "كغ", "GRAM": "غ", "PIECE": "قطعة"},
}


def t(lang, key, **kwargs):
    """Look up `key` for `lang` (falling back to English) and format it."""
    table = TRANSLATIONS.get(lang) or TRANSLATIONS["en"]
    template = table.get(key, TRANSLATIONS["en"].get(key, key))
    return template.format(**kwargs) if kwargs else template


def unit_label(lang, unit):
    return UNIT_LABELS.get(lang, UNIT_LABELS["en"]).get(unit, unit)


def day_word(lang, days):
    return t(lang, "day" if abs(days) == 1 else "days")


def bilingual(key, **kwargs):
    """Return (english, arabic) renderings of a message.

    Values that are themselves per-language (unit, day_word, currency, party
    fallbacks) may be given as callables taking the language code.
    """
    out = []
    for lang in ("en", "ar"):
        resolved = {k: (v(lang) if callable(v) else v) for k, v in kwargs.items()}
        out.append(t(lang, key, **resolved))
    return tuple(out)
