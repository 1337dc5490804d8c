from apscheduler.schedulers.background import BackgroundScheduler

from extensions import db
from utils.invoices import mark_overdue_invoices
from utils.reconcile import expire_stale_payments
from utils.timezone_helpers import east_africa_today


def sweep_payments_job(app):
    with app.app_context():
        try:
            expire_stale_payments()
        except Exception:
            db.session.rollback()
            app.logger.exception("Stale payment sweep failed")


def overdue_job(app):
    with app.app_context():
        try:
            mark_overdue_invoices(east_africa_today())
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception("Overdue invoice sweep failed")


def start_scheduler(app):
    scheduler = BackgroundScheduler(timezone="Africa/Nairobi")
    minutes = int(app.config.get('SWEEP_INTERVAL_MINUTES', 10))
    scheduler.add_job(lambda: sweep_payments_job(app), 'interval', minutes=minutes, id='stale_payment_sweep', replace_existing=True)
    scheduler.add_job(lambda: overdue_job(app), 'cron', hour=0, minute=15, id='overdue_invoices', replace_existing=True)
    scheduler.start()
    app.logger.info("Scheduler started (payment sweep every %d min)", minutes)
    return scheduler
