"""
Target lead fields and the header aliases recognised for each of them.

Aliases are stored pre-normalized (see ``auto_mapper.normalize_header``) so
exact matches are a dictionary lookup.
"""
from typing import Dict, List

TARGET_FIELDS: List[str] = [
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "status",
    "source",
    "notes",
    "assigned_to",
]

# At least one of these must be mapped and survive normalization.
CONTACT_FIELDS = ("email", "phone", "external_id")
RECOMMENDED_FIELDS = ("first_name", "last_name")

# Columns that may participate in duplicate detection.
DEDUPE_FIELDS = CONTACT_FIELDS

FIELD_MAX_LENGTHS: Dict[str, int] = {
    "external_id": 100,
    "first_name": 100,
    "last_name": 100,
    "email": 255,
    "phone": 50,
    "company": 200,
    "job_title": 100,
    "address": 500,
    "city": 100,
    "postal_code": 20,
    "country": 100,
    "status": 50,
    "source": 100,
    "notes": 5000,
    "assigned_to": 200,
}

COLUMN_ALIASES: Dict[str, List[str]] = {
    "external_id": [
        "id", "external_id", "externalid", "id_externe", "identifiant", "reference",
        "ref", "numero", "no", "code", "code_client", "lead_id", "customer_id",
        "client_id", "crm_id",
    ],
    "first_name": [
        "prenom", "first_name", "firstname", "first", "given_name", "givenname",
        "forename", "prenom_contact",
    ],
    "last_name": [
        "nom", "nom_de_famille", "last_name", "lastname", "last", "family_name",
        "familyname", "surname", "full_name", "fullname", "name", "nom_contact",
    ],
    "email": [
        "email", "e_mail", "mail", "courriel", "adresse_email", "adresse_mail",
        "email_address", "emailaddress", "mail_address", "adresse_electronique",
    ],
    "phone": [
        "telephone", "tel", "phone", "phone_number", "phonenumber", "mobile",
        "portable", "gsm", "numero_de_telephone", "num_tel", "tel_mobile",
        "telephone_mobile", "cell", "cellphone", "cell_phone",
    ],
    "company": [
        "entreprise", "societe", "company", "company_name", "raison_sociale",
        "organisation", "organization", "employeur", "employer", "business",
        "nom_entreprise",
    ],
    "job_title": [
        "fonction", "poste", "titre", "job_title", "jobtitle", "title", "role",
        "position", "profession", "metier", "occupation",
    ],
    "address": [
        "adresse", "address", "rue", "street", "adresse_postale", "street_address",
        "address_line_1", "address1", "location",
    ],
    "city": [
        "ville", "city", "commune", "localite", "town", "municipality",
    ],
    "postal_code": [
        "code_postal", "cp", "postal_code", "postalcode", "zip", "zipcode",
        "zip_code", "postcode",
    ],
    "country": [
        "pays", "country", "nation", "region", "country_code",
    ],
    "status": [
        "statut", "status", "etat", "state", "lead_status", "statut_lead",
        "stage", "etape",
    ],
    "source": [
        "source", "origine", "provenance", "canal", "channel", "campaign",
        "campagne", "lead_source", "utm_source",
    ],
    "notes": [
        "notes", "note", "commentaire", "commentaires", "comment", "comments",
        "remarque", "remarques", "description", "observations", "info",
        "information", "details",
    ],
    "assigned_to": [
        "commercial", "vendeur", "assigne", "assigne_a", "assigned_to", "assigned",
        "owner", "responsable", "sales_rep", "salesrep", "agent", "rep",
        "conseiller", "account_owner",
    ],
}

LEAD_STATUSES: Dict[str, str] = {
    "new": "Nouveau",
    "rdv": "RDV",
    "no_answer_1": "Pas de réponse 1",
    "no_answer_2": "Pas de réponse 2",
    "wrong_number": "Faux numéro",
    "not_interested": "Pas intéressé",
    "deposit": "Dépôt",
    "callback": "Rappeler",
    "relance": "Relance",
    "mail": "Mail",
    # Legacy values still accepted on import.
    "contacted": "Contacté",
    "qualified": "Qualifié",
    "proposal": "Proposition",
    "negotiation": "En négociation",
    "won": "Gagné",
    "lost": "Perdu",
}

# Keys are compared after ``auto_mapper.normalize_header``.
LEAD_STATUS_ALIASES: Dict[str, str] = {
    "nouveau": "new",
    "not_interess": "not_interested",
    "not_interesse": "not_interested",
    "non_interesse": "not_interested",
    "pas_interesse": "not_interested",
    "uninterested": "not_interested",
    "no_answer": "no_answer_1",
    "no_answer1": "no_answer_1",
    "not_answered": "no_answer_1",
    "pas_de_reponse": "no_answer_1",
    "faux_numero": "wrong_number",
    "rappeler": "callback",
    "depot": "deposit",
    "rendez_vous": "rdv",
}
