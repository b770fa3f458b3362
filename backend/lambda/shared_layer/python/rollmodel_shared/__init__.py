"""rollmodel_shared — Shared code for the Roll Model journal Lambdas.

Provides:
    - Caller identity and role checks (Cognito claims / JWT)
    - DynamoDB client singleton and single-table item helpers
    - HTTP response helpers with CORS and the API error envelope
    - Request logging wrapper
    - Journal domain logic: entries, search, checkoffs, progress views,
      partners, saved searches, structured extraction, AI client
"""

__version__ = "1.0.0"
