"""Readable labels for national registry codes."""

from typing import Dict, Optional

# Legal category codes (catégorie juridique)
LEGAL_FORMS: Dict[str, str] = {
    "1000": "Entrepreneur individuel",
    "5202": "SNC",
    "5306": "SCS",
    "5308": "SCA",
    "5499": "SA",
    "5505": "SA à participation ouvrière",
    "5510": "SAS",
    "5515": "SASU",
    "5520": "SARL",
    "5525": "EURL",
    "5530": "SNC",
    "5540": "SCS",
    "5550": "SCA",
    "5555": "SEM",
    "5560": "SEML",
    "5570": "SCIC",
    "5580": "SCOP",
    "5585": "SCOP à forme SARL",
    "5599": "SA à conseil d'administration",
    "5710": "SAS",
    "5720": "SASU",
    "5785": "Société d'exercice libéral par actions simplifiée",
    "6210": "GEIE",
    "6220": "GIE",
    "6540": "Société civile immobilière",
    "6541": "Société civile immobilière de construction-vente",
    "6599": "Société civile",
    "7210": "Commune",
    "7220": "Département",
    "7229": "Région",
    "9210": "Congrégation",
    "9220": "Association déclarée",
    "9260": "Association cultuelle",
    "9300": "Fondation",
}

# Workforce bands (tranche d'effectifs)
HEADCOUNT_BANDS: Dict[str, str] = {
    "NN": "Non employeur",
    "00": "0 salarié",
    "01": "1 ou 2 salariés",
    "02": "3 à 5 salariés",
    "03": "6 à 9 salariés",
    "11": "10 à 19 salariés",
    "12": "20 à 49 salariés",
    "21": "50 à 99 salariés",
    "22": "100 à 199 salariés",
    "31": "200 à 249 salariés",
    "32": "250 à 499 salariés",
    "41": "500 à 999 salariés",
    "42": "1 000 à 1 999 salariés",
    "51": "2 000 à 4 999 salariés",
    "52": "5 000 à 9 999 salariés",
    "53": "10 000 salariés et plus",
}


def legal_form_label(code: Optional[str]) -> Optional[str]:
    """Label for a legal category code; unknown codes are returned as is."""
    if not code:
        return None
    code = str(code).strip()
    return LEGAL_FORMS.get(code, code)


def headcount_label(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    code = str(code).strip()
    return HEADCOUNT_BANDS.get(code, code)
