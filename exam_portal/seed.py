# exam_portal/seed.py
import logging
import os

from sqlalchemy.exc import SQLAlchemyError

from .app import create_app
from .models import db, User, RoleEnum, Exam, ExamStatusEnum, Question

# Configure logging for the script
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

DEMO_QUESTIONS = [
    ("What is 7 x 8?", ["54", "56", "64", "48"], "56"),
    ("Which gas do plants absorb from the air?", ["Oxygen", "Nitrogen", "Carbon dioxide", "Hydrogen"], "Carbon dioxide"),
    ("What is the capital of Nigeria?", ["Lagos", "Abuja", "Ibadan", "Kano"], "Abuja"),
]


def seed_user(username, password, role):
    existing = User.query.filter_by(username=username).first()
    if existing:
        logging.info(f"User '{username}' already exists. Skipping creation.")
        return existing
    user = User(username=username, role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    logging.info(f"{role.value.title()} user '{username}' created successfully.")
    return user


def seed_demo_exam():
    title = 'General Knowledge (Demo)'
    if Exam.query.filter_by(title=title).first():
        logging.info(f"Exam '{title}' already exists. Skipping creation.")
        return
    exam = Exam(title=title, subject='General Studies', duration_minutes=10,
                status=ExamStatusEnum.PUBLISHED, allowed_attempts=1)
    db.session.add(exam)
    db.session.flush()
    for position, (text, options, correct) in enumerate(DEMO_QUESTIONS):
        question = Question(exam_id=exam.id, position=position, text=text, correct_answer=correct, marks=5)
        question.options = options
        db.session.add(question)
    db.session.commit()
    logging.info(f"Demo exam '{title}' created with {len(DEMO_QUESTIONS)} questions.")


def seed_data():
    """Seeds the admin user and, unless SEED_DEMO=0, a demo teacher, student and exam."""
    app = create_app()
    with app.app_context():
        logging.info("--- Starting Database Seeding ---")
        try:
            # CHANGE THIS in any shared environment
            seed_user('admin', os.environ.get('ADMIN_PASSWORD', 'change-me-admin'), RoleEnum.ADMIN)
            if os.environ.get('SEED_DEMO', '1') != '0':
                seed_user('teacher', 'teacher-demo', RoleEnum.TEACHER)
                seed_user('student', 'student-demo', RoleEnum.STUDENT)
                seed_demo_exam()
        except SQLAlchemyError as e:
            db.session.rollback()
            logging.error(f"Error seeding database: {e}", exc_info=True)
            raise
        logging.info("--- Database Seeding Complete ---")


if __name__ == '__main__':
    seed_data()
