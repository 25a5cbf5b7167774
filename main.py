import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import AuthSession, IdentityProvider
from config import get_settings
from database import SessionLocal, create_schema
from errors import NotFoundError, StoreError, ValidationError
from periods import validate_budget_month
from schemas import (
    BudgetConfigIn,
    CredentialsIn,
    FundIn,
    InheritanceIn,
    InvestmentCategoryIn,
    ModuleIn,
    PortfolioIn,
    PortfolioPatch,
    ProfileIn,
    RefundIn,
    TransactionIn,
    TransactionPatch,
)
from services import BudgetLedger, InheritanceService
from stores import BudgetStore, build_store

settings = get_settings()
logging.basicConfig(level=settings.log_level)

app = FastAPI(title="Budget Ledger")


@app.on_event("startup")
def startup_event():
    if settings.backend == "relational":
        create_schema()


@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=400, content={"detail": str(exc), "field": exc.field}
    )


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(
        status_code=500, content={"detail": str(exc), "operation": exc.operation}
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(db: Session = Depends(get_db)) -> BudgetStore:
    return build_store(settings, db)


def get_provider(store: BudgetStore = Depends(get_store)) -> IdentityProvider:
    return IdentityProvider(store, settings)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_auth(
    request: Request, provider: IdentityProvider = Depends(get_provider)
) -> AuthSession:
    auth = AuthSession(provider)
    token = _bearer_token(request)
    if not token or auth.start(token) is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_ledger(
    profile_id: str,
    year: int,
    month: int,
    store: BudgetStore = Depends(get_store),
    auth: AuthSession = Depends(get_auth),
) -> BudgetLedger:
    validate_budget_month(month, year)
    ledger = BudgetLedger(store, auth, profile_id, month, year)
    ledger.refresh()
    return ledger


def _session_payload(session) -> dict:
    return {
        "access_token": session.access_token,
        "token_type": "bearer",
        "expires_at": session.expires_at.isoformat(),
        "user": session.user.model_dump(mode="json"),
    }


# auth


@app.post("/auth/signup", status_code=201)
def sign_up(data: CredentialsIn, provider: IdentityProvider = Depends(get_provider)):
    result = AuthSession(provider).sign_up(data.email, data.password, data.full_name)
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    return _session_payload(result.data)


@app.post("/auth/signin")
def sign_in(data: CredentialsIn, provider: IdentityProvider = Depends(get_provider)):
    result = AuthSession(provider).sign_in(data.email, data.password)
    if not result.ok:
        raise HTTPException(status_code=401, detail=result.error)
    return _session_payload(result.data)


@app.post("/auth/signout")
def sign_out(auth: AuthSession = Depends(get_auth)):
    auth.sign_out()
    return {"ok": True}


# profiles


@app.get("/profiles")
def list_profiles(auth: AuthSession = Depends(get_auth)):
    return auth.profiles()


@app.post("/profiles", status_code=201)
def create_profile(data: ProfileIn, auth: AuthSession = Depends(get_auth)):
    return auth.provider.create_profile(
        auth.user_id, data.profile_name, data.display_name, data.is_primary
    )


@app.post("/profiles/{profile_id}/primary")
def set_primary_profile(profile_id: str, auth: AuthSession = Depends(get_auth)):
    return auth.provider.set_primary_profile(auth.user_id, profile_id)


@app.post("/profiles/{profile_id}/deactivate")
def deactivate_profile(profile_id: str, auth: AuthSession = Depends(get_auth)):
    return auth.provider.deactivate_profile(auth.user_id, profile_id)


@app.get("/profiles/{profile_id}/inheritances")
def list_inheritances(
    profile_id: str,
    store: BudgetStore = Depends(get_store),
    auth: AuthSession = Depends(get_auth),
):
    return InheritanceService(store).list_inheritances(auth.user_id, profile_id)


# budgets

BUDGET = "/budgets/{profile_id}/{year}/{month}"


@app.get(BUDGET)
def budget_snapshot(ledger: BudgetLedger = Depends(get_ledger)):
    return ledger.snapshot


@app.put(f"{BUDGET}/config")
def save_budget_config(data: BudgetConfigIn, ledger: BudgetLedger = Depends(get_ledger)):
    ledger.save_budget_config(data)
    return ledger.snapshot


@app.delete(f"{BUDGET}/config")
def delete_budget_config(ledger: BudgetLedger = Depends(get_ledger)):
    ledger.delete_budget_config()
    return ledger.snapshot


@app.post(f"{BUDGET}/portfolios", status_code=201)
def create_portfolio(data: PortfolioIn, ledger: BudgetLedger = Depends(get_ledger)):
    return ledger.save_investment_portfolio(data)


@app.patch(f"{BUDGET}/portfolios/{{portfolio_id}}")
def update_portfolio(
    portfolio_id: str, data: PortfolioPatch, ledger: BudgetLedger = Depends(get_ledger)
):
    return ledger.update_investment_portfolio(portfolio_id, data)


@app.delete(f"{BUDGET}/portfolios/{{portfolio_id}}")
def delete_portfolio(portfolio_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    ledger.delete_investment_portfolio(portfolio_id)
    return ledger.snapshot


@app.delete(f"{BUDGET}/portfolios")
def delete_all_portfolios(ledger: BudgetLedger = Depends(get_ledger)):
    ledger.delete_all_investment_portfolios()
    return ledger.snapshot


@app.post(f"{BUDGET}/portfolios/{{portfolio_id}}/categories", status_code=201)
def create_investment_category(
    portfolio_id: str,
    data: InvestmentCategoryIn,
    ledger: BudgetLedger = Depends(get_ledger),
):
    return ledger.add_investment_category(portfolio_id, data)


@app.post(f"{BUDGET}/categories/{{category_id}}/funds", status_code=201)
def create_fund(
    category_id: str, data: FundIn, ledger: BudgetLedger = Depends(get_ledger)
):
    return ledger.add_investment_fund(category_id, data)


@app.post(f"{BUDGET}/transactions", status_code=201)
def create_transaction(data: TransactionIn, ledger: BudgetLedger = Depends(get_ledger)):
    return ledger.add_transaction(data)


@app.patch(f"{BUDGET}/transactions/{{transaction_id}}")
def update_transaction(
    transaction_id: str,
    data: TransactionPatch,
    ledger: BudgetLedger = Depends(get_ledger),
):
    return ledger.update_transaction(transaction_id, data)


@app.delete(f"{BUDGET}/transactions/{{transaction_id}}")
def delete_transaction(transaction_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    ledger.delete_transaction(transaction_id)
    return ledger.snapshot


@app.delete(f"{BUDGET}/transactions")
def delete_all_transactions(ledger: BudgetLedger = Depends(get_ledger)):
    ledger.delete_all_transactions()
    return ledger.snapshot


@app.post(f"{BUDGET}/transactions/{{transaction_id}}/refund", status_code=201)
def refund_transaction(
    transaction_id: str, data: RefundIn, ledger: BudgetLedger = Depends(get_ledger)
):
    return ledger.refund_transaction(transaction_id, data.amount, data.reason)


@app.post(f"{BUDGET}/modules", status_code=201)
def create_module(data: ModuleIn, ledger: BudgetLedger = Depends(get_ledger)):
    return ledger.create_budget_module(data)


@app.delete(f"{BUDGET}/modules/{{module_id}}")
def deactivate_module(module_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    return ledger.deactivate_budget_module(module_id)


@app.post(f"{BUDGET}/inherit", status_code=201)
def inherit_configuration(
    data: InheritanceIn, ledger: BudgetLedger = Depends(get_ledger)
):
    audit = ledger.inherit_configuration(data.source_period_id, data.components)
    return {"inheritance": audit, "snapshot": ledger.snapshot}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
