"""Configurable rule tables for alerting, conflict detection and pruning."""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("lckb.rules")


class ProblemCategory(BaseModel):
    """Keyword taxonomy entry tying a problem family to labs and vitals."""

    keywords: list[str] = Field(default_factory=list)
    related_labs: list[str] = Field(default_factory=list)
    related_vitals: list[str] = Field(default_factory=list)


class VitalThreshold(BaseModel):
    """Alert band for one vital sign field."""

    field: str
    low: float | None = None
    high: float | None = None
    low_label: str = ""
    high_label: str = ""
    critical_low: float | None = None
    critical_high: float | None = None
    severity: str = "warning"
    template: str = "{label}: {value}"


class LabThreshold(BaseModel):
    """Named critical bounds for a lab analyte."""

    name: str
    low: float | None = None
    high: float | None = None
    unit: str = ""


class ContraindicationRule(BaseModel):
    """Medication keyword class paired with contraindicating phrases."""

    name: str
    medications: list[str]
    contraindications: list[str]
    severity: str = "critical"


class ScoringPattern(BaseModel):
    """Regex and weight used to rank key findings."""

    pattern: str
    weight: float


DEFAULT_PROBLEM_CATEGORIES: dict[str, dict[str, list[str]]] = {
    "cardiovascular": {
        "keywords": [
            "heart failure", "hf", "chf", "hfref", "hfpef", "atrial fibrillation", "afib",
            "a-fib", "hypertension", "htn", "cad", "coronary", "mi", "myocardial",
            "cardiomyopathy", "valve", "arrhythmia", "angina", "pericarditis",
        ],
        "related_labs": ["BNP", "NT-proBNP", "Troponin", "Troponin I", "Troponin T", "CK-MB"],
        "related_vitals": ["systolic", "diastolic", "heart_rate", "weight"],
    },
    "renal": {
        "keywords": [
            "kidney", "ckd", "chronic kidney", "aki", "acute kidney", "nephropathy",
            "renal", "esrd", "dialysis", "proteinuria",
        ],
        "related_labs": [
            "BUN", "Creatinine", "eGFR", "Potassium", "Phosphorus", "Calcium",
            "Uric Acid", "Cystatin C", "Albumin/Creatinine Ratio",
        ],
        "related_vitals": ["weight", "systolic", "diastolic"],
    },
    "endocrine": {
        "keywords": [
            "diabetes", "dm", "dm2", "dm1", "t2dm", "type 2", "type 1", "a1c", "thyroid",
            "hypothyroid", "hyperthyroid", "adrenal", "pituitary", "insulin",
        ],
        "related_labs": [
            "Glucose", "Hemoglobin A1c", "HbA1c", "TSH", "Free T4", "T3",
            "Fructosamine", "C-Peptide", "Insulin",
        ],
        "related_vitals": ["weight"],
    },
    "pulmonary": {
        "keywords": [
            "copd", "asthma", "pneumonia", "respiratory", "lung", "pulmonary",
            "bronchitis", "emphysema", "fibrosis", "sleep apnea", "osa", "hypoxia",
        ],
        "related_labs": ["pO2", "pCO2", "pH", "Bicarbonate"],
        "related_vitals": ["spo2", "respiratory_rate"],
    },
    "gi": {
        "keywords": [
            "gi", "gastrointestinal", "bleed", "bleeding", "liver", "hepatic",
            "cirrhosis", "gastro", "peptic", "ulcer", "gerd", "pancreatitis",
            "colitis", "crohn", "ibd",
        ],
        "related_labs": [
            "AST", "ALT", "Alkaline Phosphatase", "Bilirubin", "Albumin",
            "INR", "PT", "Ammonia", "Lipase", "Amylase",
        ],
        "related_vitals": [],
    },
    "hematologic": {
        "keywords": [
            "anemia", "coagulation", "bleeding", "thrombocytopenia", "leukemia",
            "lymphoma", "dvt", "pe", "pulmonary embolism", "clot", "anticoagulation",
        ],
        "related_labs": [
            "Hemoglobin", "Hematocrit", "WBC", "Platelets", "MCV", "MCH",
            "MCHC", "RDW", "Iron", "Ferritin", "TIBC", "Reticulocyte",
            "INR", "PT", "PTT", "D-Dimer", "Fibrinogen",
        ],
        "related_vitals": [],
    },
    "neurologic": {
        "keywords": [
            "neuropathy", "stroke", "cva", "tia", "seizure", "epilepsy",
            "dementia", "alzheimer", "parkinson", "ms", "multiple sclerosis",
        ],
        "related_labs": [],
        "related_vitals": [],
    },
    "infectious": {
        "keywords": [
            "infection", "sepsis", "cellulitis", "uti", "pneumonia", "abscess",
            "osteomyelitis", "endocarditis", "meningitis", "hiv", "hepatitis",
        ],
        "related_labs": ["WBC", "Procalcitonin", "CRP", "ESR", "Lactate", "Blood Culture"],
        "related_vitals": ["temperature", "heart_rate", "respiratory_rate"],
    },
    "psychiatric": {
        "keywords": [
            "depression", "anxiety", "bipolar", "schizophrenia", "ptsd",
            "substance", "alcohol", "opioid", "psychiatric",
        ],
        "related_labs": [],
        "related_vitals": [],
    },
    "musculoskeletal": {
        "keywords": [
            "arthritis", "osteoarthritis", "rheumatoid", "gout", "fracture",
            "osteoporosis", "back pain", "joint",
        ],
        "related_labs": ["Uric Acid", "ESR", "CRP", "RF", "Anti-CCP", "ANA"],
        "related_vitals": [],
    },
}

DEFAULT_VITAL_THRESHOLDS: list[dict[str, Any]] = [
    {
        "field": "systolic", "low": 90, "high": 180,
        "low_label": "HYPOTENSION", "high_label": "HYPERTENSIVE URGENCY",
        "severity": "critical", "template": "{label}: BP {systolic}/{diastolic}",
    },
    {
        "field": "heart_rate", "low": 50, "high": 120,
        "low_label": "BRADYCARDIA", "high_label": "TACHYCARDIA",
        "critical_low": 40, "critical_high": 150, "template": "{label}: HR {value}",
    },
    {
        "field": "spo2", "low": 92, "low_label": "HYPOXIA",
        "critical_low": 88, "template": "{label}: SpO2 {value}%",
    },
    {
        "field": "respiratory_rate", "low": 10, "high": 24,
        "low_label": "BRADYPNEA", "high_label": "TACHYPNEA",
        "critical_low": 8, "critical_high": 30, "template": "{label}: RR {value}",
    },
    {
        "field": "temperature", "low": 96, "high": 101.3,
        "low_label": "HYPOTHERMIA", "high_label": "FEVER",
        "critical_low": 95, "critical_high": 103, "template": "{label}: Temp {value}°F",
    },
]

DEFAULT_LAB_THRESHOLDS: list[dict[str, Any]] = [
    {"name": "Potassium", "low": 2.5, "high": 6.5, "unit": "mEq/L"},
    {"name": "Sodium", "low": 120, "high": 160, "unit": "mEq/L"},
    {"name": "Glucose", "low": 50, "high": 400, "unit": "mg/dL"},
    {"name": "Hemoglobin", "low": 7, "high": 20, "unit": "g/dL"},
    {"name": "Troponin", "high": 0.04, "unit": "ng/mL"},
    {"name": "Creatinine", "high": 10, "unit": "mg/dL"},
]

DEFAULT_CONTRAINDICATION_RULES: list[dict[str, Any]] = [
    {
        "name": "anticoagulant",
        "medications": [
            "heparin", "enoxaparin", "lovenox", "warfarin", "coumadin", "eliquis",
            "apixaban", "xarelto", "rivaroxaban", "anticoagul",
        ],
        "contraindications": [
            "gi bleed", "gastrointestinal bleed", "active bleeding", "hemorrhage",
            "anticoagulation contraindicated", "no anticoagulation", "hold anticoag", "bleed risk",
        ],
        "severity": "critical",
    },
    {
        "name": "nsaid",
        "medications": ["nsaid", "ibuprofen", "naproxen", "ketorolac", "toradol", "aspirin", "indomethacin"],
        "contraindications": [
            "gi bleed", "renal failure", "ckd stage 4", "ckd stage 5", "aki", "acute kidney",
            "gfr < 30", "egfr < 30", "creatinine > 4",
        ],
        "severity": "critical",
    },
    {
        "name": "metformin_renal",
        "medications": ["metformin"],
        "contraindications": ["egfr < 30", "gfr < 30", "severe renal", "lactic acidosis", "contrast dye"],
        "severity": "warning",
    },
]

DEFAULT_MEDICATION_PROBLEM_MAP: dict[str, list[str]] = {
    "heart failure": [
        "furosemide", "lasix", "carvedilol", "metoprolol", "lisinopril", "entresto",
        "spironolactone", "digoxin",
    ],
    "diabetes": ["metformin", "insulin", "glipizide", "januvia", "jardiance", "ozempic", "trulicity"],
    "hypertension": ["lisinopril", "amlodipine", "losartan", "metoprolol", "hydrochlorothiazide", "hctz"],
    "atrial fibrillation": ["warfarin", "eliquis", "xarelto", "pradaxa", "metoprolol", "diltiazem", "digoxin"],
    "kidney": ["sodium bicarbonate", "sevelamer", "calcitriol", "epoetin"],
    "anticoagulation": ["warfarin", "eliquis", "xarelto", "pradaxa", "heparin", "lovenox", "aspirin"],
}

DEFAULT_FINDING_SCORES: list[dict[str, Any]] = [
    {"pattern": r"critical|urgent|emergent|acute|unstable|deteriorat", "weight": 10},
    {"pattern": r"safety|contraindic|allerg|interaction", "weight": 10},
    {"pattern": r"worsening|declining|concerning|abnormal", "weight": 5},
    {"pattern": r"baseline|historical|chronic|stable", "weight": 1},
]


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, flags=re.IGNORECASE)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return _compile(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])")


def _prefix_pattern(phrase: str) -> re.Pattern[str]:
    # Left boundary only, so stems such as "anticoagul" still match.
    return _compile(rf"(?<![a-z0-9]){re.escape(phrase)}")


def normalize_text(text: str) -> str:
    """Lower-case, trim and collapse whitespace for dedup comparisons."""
    return re.sub(r"\s+", " ", (text or "").strip().lower())


class RuleSet(BaseModel):
    """All heuristic rule tables, overridable from the ``rules`` config section."""

    problem_categories: dict[str, ProblemCategory] = Field(
        default_factory=lambda: {
            name: ProblemCategory(**cfg) for name, cfg in DEFAULT_PROBLEM_CATEGORIES.items()
        }
    )
    vital_thresholds: list[VitalThreshold] = Field(
        default_factory=lambda: [VitalThreshold(**cfg) for cfg in DEFAULT_VITAL_THRESHOLDS]
    )
    lab_thresholds: list[LabThreshold] = Field(
        default_factory=lambda: [LabThreshold(**cfg) for cfg in DEFAULT_LAB_THRESHOLDS]
    )
    critical_flags: list[str] = Field(default_factory=lambda: ["critical", "HH", "LL"])
    no_data_patterns: list[str] = Field(
        default_factory=lambda: [
            r"\bno data\b",
            r"\bno results?\b",
            r"\bnot (?:yet )?(?:available|found|populated|recorded|on file)\b",
            r"\bno (?:[\w-]+ ){0,3}(?:available|found|on file|recorded|populated)\b",
            r"\bnot yet (?:resulted|reported|drawn)\b",
        ]
    )
    has_data_patterns: list[str] = Field(
        default_factory=lambda: [
            r"\bvalues?\b",
            r"\bresults?\b",
            r"\btrend(?:s|ed|ing)?\b",
            r"\blevels?\b",
            r"mg/dl|meq/l|g/dl|mmol|pg/ml|ng/ml|\bu/l\b",
            r"\d\s*(?:mmhg|bpm)\b",
        ]
    )
    general_no_data_patterns: list[str] = Field(
        default_factory=lambda: [r"no data (?:populated|available)", r"no chart data", r"chart (?:is )?empty"]
    )
    concern_patterns: list[str] = Field(
        default_factory=lambda: [r"new onset", r"worsening", r"acute", r"critical", r"unstable", r"deteriorat"]
    )
    patient_statement_patterns: list[str] = Field(
        default_factory=lambda: [
            r'"([^"]+)"',
            r"patient (?:reports?|states?|says?|denies|complains? of)\s+([^.]+)",
        ]
    )
    assessment_keywords: list[str] = Field(default_factory=lambda: ["assessment", "diagnosis", "plan"])
    contraindication_rules: list[ContraindicationRule] = Field(
        default_factory=lambda: [ContraindicationRule(**cfg) for cfg in DEFAULT_CONTRAINDICATION_RULES]
    )
    opposite_terms: list[tuple[str, str]] = Field(
        default_factory=lambda: [
            ("improving", "worsening"),
            ("stable", "deteriorating"),
            ("resolved", "active"),
            ("no evidence", "confirmed"),
            ("controlled", "uncontrolled"),
        ]
    )
    finding_scores: list[ScoringPattern] = Field(
        default_factory=lambda: [ScoringPattern(**cfg) for cfg in DEFAULT_FINDING_SCORES]
    )
    finding_recency_weight: float = 0.5
    finding_no_data_penalty: float = -5
    finding_problem_duplicate_penalty: float = -2
    medication_problem_map: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MEDICATION_PROBLEM_MAP.items()}
    )

    @classmethod
    def from_config(cls, overrides: dict[str, Any] | None = None) -> RuleSet:
        """Build rules from defaults, merging mapping tables and replacing lists."""
        base = cls().model_dump()
        for key, value in (overrides or {}).items():
            if key not in cls.model_fields:
                logger.warning("Ignoring unknown rule table %r", key)
                continue
            if isinstance(base[key], dict) and isinstance(value, dict):
                base[key] = {**base[key], **value}
            else:
                base[key] = value
        return cls.model_validate(base)

    # ── taxonomy ─────────────────────────────────────────────────────

    def categorize(self, problem_name: str) -> str:
        """Return the first category whose keywords appear in the name."""
        for category, config in self.problem_categories.items():
            if any(_keyword_pattern(kw).search(problem_name or "") for kw in config.keywords):
                return category
        return "other"

    def categories_in(self, text: str) -> set[str]:
        """All categories with at least one keyword present in text."""
        return {
            category
            for category, config in self.problem_categories.items()
            if any(_keyword_pattern(kw).search(text or "") for kw in config.keywords)
        }

    def shares_clinical_topic(self, text_a: str, text_b: str) -> bool:
        return bool(self.categories_in(text_a) & self.categories_in(text_b))

    def category_keywords(self, problem_name: str) -> list[str]:
        keywords = [problem_name.lower()]
        category = self.categorize(problem_name)
        if category in self.problem_categories:
            keywords.extend(self.problem_categories[category].keywords)
        return list(dict.fromkeys(keywords))

    def mentions_keyword(self, text: str, keyword: str) -> bool:
        return bool(_keyword_pattern(keyword).search(text or ""))

    def mentions_phrase(self, text: str, phrase: str) -> bool:
        """Phrase starting at a word boundary; the end may run into a longer word."""
        return bool(_prefix_pattern(phrase).search(text or ""))

    # ── text classes ─────────────────────────────────────────────────

    def is_no_data(self, text: str) -> bool:
        return any(_compile(p).search(text or "") for p in self.no_data_patterns)

    def asserts_data(self, text: str) -> bool:
        """Quantitative-data phrasing that is not itself a no-data statement."""
        if self.is_no_data(text):
            return False
        return any(_compile(p).search(text or "") for p in self.has_data_patterns)

    def is_general_no_data(self, text: str) -> bool:
        return any(_compile(p).search(text or "") for p in self.general_no_data_patterns)

    def has_assessment_language(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(keyword in lowered for keyword in self.assessment_keywords)

    def concern_sentences(self, text: str) -> list[str]:
        """First sentence matching each concern pattern, in pattern order."""
        sentences = [s.strip() for s in re.split(r"[.!?]+", text or "") if s.strip()]
        findings: list[str] = []
        for pattern in self.concern_patterns:
            regex = _compile(pattern)
            for sentence in sentences:
                if regex.search(sentence):
                    if sentence not in findings:
                        findings.append(sentence)
                    break
        return findings

    def patient_statements(self, text: str) -> list[str]:
        statements: list[str] = []
        for pattern in self.patient_statement_patterns:
            for match in _compile(pattern).finditer(text or ""):
                statement = match.group(1).strip()
                if statement and statement not in statements:
                    statements.append(statement)
        return statements

    def lab_threshold(self, lab_name: str) -> LabThreshold | None:
        wanted = (lab_name or "").strip().lower()
        for threshold in self.lab_thresholds:
            if threshold.name.lower() == wanted:
                return threshold
        return None

    def finding_weight(self, finding: str) -> float:
        return sum(s.weight for s in self.finding_scores if _compile(s.pattern).search(finding or ""))
