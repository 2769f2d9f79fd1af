from typing import Optional
from sqlalchemy.orm import Session, joinedload
import models

def get_location_by_shopify_id(db: Session, shopify_location_id: str) -> Optional[models.CompanyLocation]:
    return (
        db.query(models.CompanyLocation)
        .options(joinedload(models.CompanyLocation.company).joinedload(models.Company.webhook_secrets))
        .filter(models.CompanyLocation.shopify_location_id == shopify_location_id)
        .first()
    )
