# exam_portal/app.py
import os
import io
import enum
import logging
from datetime import datetime, timezone, timedelta
from functools import wraps

import click
import jwt
import pandas as pd
import sqlalchemy
from sqlalchemy.exc import SQLAlchemyError
from flask import Flask, request, jsonify, g
from flask_cors import CORS
from google.cloud.sql.connector import Connector, IPTypes

from .attempts import AttemptTracker
from .config import Config
from .errors import (
    AttemptNotFound, AttemptsExhausted, ExamUnavailable, QuestionNotFound,
    StoreError, TransientStoreError,
)
from .gateway import SQLAlchemyGateway
from .models import (
    db, User, Exam, Question, ExamAttempt, RoleEnum, ExamStatusEnum,
    QuestionTypeEnum, NotificationLog,
)

# --- Cloud SQL connection ---
connector = None


def make_getconn(config):
    """Connection factory for a hosted Cloud SQL (MySQL) instance."""
    def getconn() -> sqlalchemy.engine.base.Connection:
        global connector
        if connector is None:
            logging.info("Initializing Cloud SQL Connector...")
            connector = Connector()
        try:
            return connector.connect(
                config['INSTANCE_CONNECTION_NAME'],
                "pymysql",
                user=config['DB_USER'],
                password=config['DB_PASS'],
                db=config['DB_NAME'],
                ip_type=IPTypes.PUBLIC,
            )
        except Exception as e:
            logging.exception(f"Failed to connect to Cloud SQL instance '{config['INSTANCE_CONNECTION_NAME']}' as user '{config['DB_USER']}': {e}")
            raise
    return getconn


def _configure_database(app):
    if app.config.get('INSTANCE_CONNECTION_NAME'):
        if not all([app.config.get('DB_USER'), app.config.get('DB_PASS'), app.config.get('DB_NAME')]):
            raise ValueError("Missing Cloud SQL database configuration in Config (DB_USER, DB_PASS, DB_NAME)")
        app.logger.info(f"Configuring SQLAlchemy for Cloud SQL instance: {app.config['INSTANCE_CONNECTION_NAME']}")
        app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
            "creator": make_getconn(app.config),
            "pool_size": 5,
            "max_overflow": 2,
            "pool_timeout": 30,
            "pool_recycle": 1800,
        }
        # Dummy URI needed by Flask-SQLAlchemy, the connection comes from 'creator'
        app.config['SQLALCHEMY_DATABASE_URI'] = "mysql+pymysql://"
    elif app.config.get('DATABASE_URL'):
        app.config['SQLALCHEMY_DATABASE_URI'] = app.config['DATABASE_URL']
    else:
        os.makedirs(app.instance_path, exist_ok=True)
        app.config['SQLALCHEMY_DATABASE_URI'] = f"sqlite:///{os.path.join(app.instance_path, 'exam_portal.sqlite')}"
        app.logger.info(f"No database configured; using SQLite at {app.config['SQLALCHEMY_DATABASE_URI']}")


def _parse_questions(questions_data, start_position=0):
    """Validate question payloads and build (unsaved) Question rows."""
    if not isinstance(questions_data, list) or not questions_data:
        raise ValueError("Exam must contain at least one question in a list format.")
    questions = []
    for idx, q_data in enumerate(questions_data):
        if not isinstance(q_data, dict): raise ValueError(f"Question data at index {idx} must be a dictionary.")
        text = str(q_data.get('text') or '').strip()
        if not text: raise ValueError(f"Question text cannot be empty (index {idx}).")
        try: qtype = QuestionTypeEnum(q_data.get('question_type', QuestionTypeEnum.MULTIPLE_CHOICE.value))
        except ValueError: raise ValueError(f"Invalid question_type at index {idx}.")
        try: marks = float(q_data.get('marks', 1))
        except (ValueError, TypeError): raise ValueError(f"Marks must be a number (index {idx}).")
        if marks < 0: raise ValueError(f"Marks cannot be negative (index {idx}).")

        correct_answer = q_data.get('correct_answer')
        correct_answer = str(correct_answer).strip() if correct_answer is not None else None
        options = []
        if qtype is QuestionTypeEnum.MULTIPLE_CHOICE:
            options = [str(opt).strip() for opt in q_data.get('options') or [] if str(opt).strip()]
            if len(options) < 2: raise ValueError(f"Question must have at least 2 non-empty options (index {idx}).")
            if not correct_answer: raise ValueError(f"Correct answer cannot be empty (index {idx}).")
            if correct_answer not in options: raise ValueError(f"Correct answer '{correct_answer}' not found in options {options} (index {idx}).")

        question = Question(
            position=int(q_data.get('position', start_position + idx)),
            text=text,
            question_type=qtype,
            correct_answer=correct_answer,
            marks=marks,
        )
        question.options = options
        questions.append(question)
    return questions


# Factory function to create the Flask application
def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    # --- Configure Logging ---
    log_level = app.config.get('LOG_LEVEL', 'INFO')
    logging.basicConfig(level=log_level,
                        format='%(asctime)s %(levelname)s %(name)s %(threadName)s : %(message)s')
    app.logger.info(f"Flask App starting with log level {log_level}")

    _configure_database(app)
    db.init_app(app)

    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS'],
                                "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
                                "allow_headers": ["Content-Type", "Authorization"],
                                "supports_credentials": True}})

    with app.app_context():
        db.create_all()

    tracker = AttemptTracker(SQLAlchemyGateway(app))
    app.extensions['attempt_tracker'] = tracker

    # --- Authentication Helper Functions ---
    def create_token(user_id, role):
        payload = {
            'user_id': user_id,
            'role': role.value if isinstance(role, enum.Enum) else role,
            'exp': datetime.now(timezone.utc) + app.config['JWT_EXPIRATION_DELTA']
        }
        return jwt.encode(payload, app.config['SECRET_KEY'], algorithm='HS256')

    def token_required(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            token = None
            auth_header = request.headers.get('Authorization')
            if auth_header and auth_header.startswith('Bearer '):
                token = auth_header.split(" ")[1]
            if not token:
                app.logger.warning("Token is missing from request headers.")
                return jsonify({'message': 'Token is missing'}), 401
            try:
                data = jwt.decode(token, app.config['SECRET_KEY'], algorithms=['HS256'])
            except jwt.ExpiredSignatureError:
                app.logger.info("Token has expired.")
                return jsonify({'message': 'Token has expired'}), 401
            except jwt.InvalidTokenError as e:
                app.logger.warning(f"Token is invalid: {e}")
                return jsonify({'message': 'Token is invalid'}), 401
            current_user = db.session.get(User, data['user_id'])
            if not current_user:
                app.logger.warning(f"User with ID {data['user_id']} (from token) not found in database.")
                return jsonify({'message': 'User not found'}), 401
            g.current_user = current_user
            g.current_role = data['role']
            return f(*args, **kwargs)
        return decorated

    def roles_required(*roles):
        allowed = {r.value for r in roles}
        def wrapper(f):
            @wraps(f)
            @token_required
            def decorated(*args, **kwargs):
                if g.current_role not in allowed:
                    app.logger.warning(f"Action denied for user {g.current_user.username} (Role: {g.current_role}) on endpoint {request.path}")
                    return jsonify({"message": "Insufficient privileges for this action"}), 403
                return f(*args, **kwargs)
            return decorated
        return wrapper

    admin_required = roles_required(RoleEnum.ADMIN)
    staff_required = roles_required(RoleEnum.ADMIN, RoleEnum.TEACHER)
    student_required = roles_required(RoleEnum.STUDENT)

    def own_attempt(attempt_id):
        """Loads an attempt of the current student, or returns an error response."""
        attempt = db.session.get(ExamAttempt, attempt_id)
        if not attempt:
            return None, (jsonify({"message": "Attempt not found."}), 404)
        if attempt.student_id != g.current_user.id:
            app.logger.warning(f"Student {g.current_user.id} tried to access attempt {attempt_id} of student {attempt.student_id}")
            return None, (jsonify({"message": "This attempt belongs to another student."}), 403)
        return attempt, None

    # --- Authentication Routes ---
    @app.route('/api/login', methods=['POST'])
    def login():
        data = request.get_json(silent=True) or {}
        username = data.get('username')
        password = data.get('password')
        if not username or not password:
            return jsonify({'message': 'Username and password required'}), 400
        user = User.query.filter_by(username=username).first()
        if not user or not user.check_password(password):
            app.logger.warning(f"Failed login attempt for username: {username}")
            return jsonify({'message': 'Invalid credentials'}), 401
        token = create_token(user.id, user.role)
        app.logger.info(f"User '{user.username}' logged in successfully.")
        return jsonify({'token': token, 'role': user.role.value, 'username': user.username})

    # --- Student Attempt Routes ---
    @app.route('/api/student/exams/<int:exam_id>/attempt', methods=['GET', 'POST'])
    @student_required
    def resume_or_start_attempt(exam_id):
        """Resumes the open attempt for this exam or starts a new one."""
        student = g.current_user
        try:
            attempt = tracker.resume_or_start(exam_id, student.id)
            exam = tracker.get_exam(exam_id)
            questions = tracker.questions_for(exam_id)
            if not questions:
                raise ExamUnavailable(f"Exam {exam_id} has no questions")
            saved = tracker.saved_answers(attempt.id)
            deadline = tracker.compute_deadline(attempt, exam)
            return jsonify({
                'attempt': attempt.to_dict(),
                'exam': exam.to_dict(include_questions=False),
                'questions': [q.to_dict(include_answer=False) for q in questions],
                'answers': {str(qid): value for qid, value in saved.items()},
                'deadline': deadline.isoformat(),
                'remainingSeconds': tracker.remaining_seconds(attempt, exam),
                'autosaveIntervalSeconds': app.config['AUTOSAVE_INTERVAL_SECONDS'],
                'countdownTickSeconds': app.config['COUNTDOWN_TICK_SECONDS'],
            })
        except ExamUnavailable as e:
            app.logger.warning(f"Student {student.id} cannot take exam {exam_id}: {e}")
            return jsonify({"message": "This exam is not currently available.", "detail": str(e)}), 404
        except AttemptsExhausted as e:
            return jsonify({"message": str(e)}), 403
        except TransientStoreError as e:
            app.logger.warning(f"Could not start attempt for student {student.id}, exam {exam_id}: {e}")
            return jsonify({"message": "Service temporarily unavailable, please retry.", "retryable": True}), 503
        except StoreError as e:
            app.logger.exception(f"Error starting attempt for student {student.id}, exam {exam_id}: {e}")
            return jsonify({"message": "Error starting exam attempt."}), 500

    @app.route('/api/student/attempts/<int:attempt_id>/answers', methods=['PUT'])
    @student_required
    def save_answer(attempt_id):
        attempt, error = own_attempt(attempt_id)
        if error: return error
        data = request.get_json(silent=True) or {}
        try: question_id = int(data.get('question_id'))
        except (ValueError, TypeError): return jsonify({"message": "question_id must be an integer."}), 400
        if 'value' not in data:
            return jsonify({"message": "Missing answer value."}), 400
        try:
            written = tracker.record_answer(attempt_id, question_id, data['value'])
        except QuestionNotFound as e:
            return jsonify({"message": str(e)}), 404
        except TransientStoreError as e:
            app.logger.warning(f"Answer for attempt {attempt_id}, question {question_id} not saved: {e}")
            return jsonify({"message": "Answer not saved, will retry.", "retryable": True}), 503
        except StoreError as e:
            app.logger.exception(f"Error saving answer for attempt {attempt_id}, question {question_id}: {e}")
            return jsonify({"message": "Error saving answer."}), 500
        if not written:
            return jsonify({"message": "Attempt already submitted; answer ignored.", "saved": False}), 409
        return jsonify({"saved": True, "question_id": question_id})

    @app.route('/api/student/attempts/<int:attempt_id>/submit', methods=['POST'])
    @student_required
    def submit_attempt(attempt_id):
        """Submits the attempt. Safe to call repeatedly; the first score stands."""
        attempt, error = own_attempt(attempt_id)
        if error: return error
        data = request.get_json(silent=True) or {}
        pending = data.get('answers') or {}
        if not isinstance(pending, dict):
            return jsonify({"message": "'answers' must be a dictionary."}), 400
        try:
            # The page's countdown may report an auto-submit, but only once the deadline has really passed
            auto = bool(data.get('auto')) and tracker.remaining_seconds(attempt, tracker.get_exam(attempt.exam_id)) == 0
            if data.get('auto') and not auto:
                app.logger.warning(f"Attempt {attempt_id} claimed auto-submit before its deadline; recording a manual submit")
            result = tracker.submit(attempt_id, pending=pending, auto=auto)
        except TransientStoreError as e:
            app.logger.warning(f"Submit of attempt {attempt_id} failed transiently: {e}")
            return jsonify({"message": "Submission failed, please retry.", "retryable": True}), 503
        except (StoreError, AttemptNotFound, ExamUnavailable) as e:
            app.logger.exception(f"Error submitting attempt {attempt_id}: {e}")
            return jsonify({"message": "Error submitting exam."}), 500
        return jsonify({"message": "Exam submitted successfully.", "result": result.to_dict()})

    @app.route('/api/student/attempts/<int:attempt_id>/result', methods=['GET'])
    @student_required
    def get_attempt_result(attempt_id):
        attempt, error = own_attempt(attempt_id)
        if error: return error
        if not attempt.submitted:
            return jsonify({"message": "Attempt has not been submitted yet."}), 409
        exam = db.session.get(Exam, attempt.exam_id)
        return jsonify({'attempt': attempt.to_dict(), 'exam': exam.to_dict()})

    # --- Exam Management (admin and teachers) ---
    @app.route('/api/admin/exams', methods=['GET'])
    @staff_required
    def get_admin_exams():
        exams = Exam.query.order_by(Exam.created_at.desc()).all()
        return jsonify([exam.to_dict() for exam in exams])

    @app.route('/api/admin/exams', methods=['POST'])
    @staff_required
    def create_exam():
        data = request.get_json(silent=True) or {}
        required_fields = ['title', 'duration_minutes', 'questions']
        missing = [field for field in required_fields if field not in data]
        if missing:
            return jsonify({"message": f"Missing required exam fields: {', '.join(missing)}."}), 400
        if not isinstance(data['title'], str) or not data['title'].strip():
            return jsonify({"message": "Invalid or missing exam title."}), 400
        try:
            duration = int(data['duration_minutes'])
            allowed_attempts = int(data.get('allowed_attempts', 1))
            passing_mark = float(data.get('passing_mark', 40))
            total_marks = float(data['total_marks']) if data.get('total_marks') is not None else None
            status = ExamStatusEnum(data.get('status', ExamStatusEnum.DRAFT.value))
            if duration <= 0: raise ValueError("Duration must be positive.")
            if allowed_attempts <= 0: raise ValueError("Allowed attempts must be positive.")
            questions = _parse_questions(data['questions'])
        except (ValueError, TypeError) as ve:
            app.logger.warning(f"Invalid data provided for exam creation: {ve}")
            return jsonify({"message": f"Invalid data provided: {ve}"}), 400

        try:
            exam = Exam(title=data['title'].strip(), subject=(data.get('subject') or '').strip() or None,
                        duration_minutes=duration, total_marks=total_marks, passing_mark=passing_mark,
                        status=status, allowed_attempts=allowed_attempts)
            db.session.add(exam)
            db.session.flush()
            for question in questions:
                question.exam_id = exam.id
                db.session.add(question)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.exception(f"Unexpected error creating exam: {e}")
            return jsonify({"message": "Internal server error creating exam."}), 500
        app.logger.info(f"Exam '{exam.title}' (ID: {exam.id}) created with {len(questions)} questions.")
        return jsonify(exam.to_dict(include_questions=True)), 201

    @app.route('/api/admin/exams/<int:exam_id>', methods=['GET'])
    @staff_required
    def get_exam(exam_id):
        exam = db.session.get(Exam, exam_id)
        if not exam:
            return jsonify({"message": "Exam not found"}), 404
        return jsonify(exam.to_dict(include_questions=True))

    @app.route('/api/admin/exams/<int:exam_id>', methods=['PUT'])
    @staff_required
    def update_exam(exam_id):
        """Updates exam metadata. Timing, marks and questions are frozen once attempts exist."""
        exam = db.session.get(Exam, exam_id)
        if not exam:
            return jsonify({"message": "Exam not found"}), 404
        data = request.get_json(silent=True) or {}
        frozen = {'duration_minutes', 'total_marks', 'questions'}
        if frozen.intersection(data) and exam.attempts.count() > 0:
            app.logger.warning(f"Refusing to change {sorted(frozen.intersection(data))} on exam {exam_id}: attempts exist.")
            return jsonify({"message": "Exam timing, marks and questions cannot change once attempts have started."}), 409
        try:
            if 'title' in data:
                if not str(data['title']).strip(): raise ValueError("Title cannot be empty.")
                exam.title = str(data['title']).strip()
            if 'subject' in data: exam.subject = (data['subject'] or '').strip() or None
            if 'status' in data: exam.status = ExamStatusEnum(data['status'])
            if 'allowed_attempts' in data:
                exam.allowed_attempts = int(data['allowed_attempts'])
                if exam.allowed_attempts <= 0: raise ValueError("Allowed attempts must be positive.")
            if 'passing_mark' in data: exam.passing_mark = float(data['passing_mark'])
            if 'duration_minutes' in data:
                exam.duration_minutes = int(data['duration_minutes'])
                if exam.duration_minutes <= 0: raise ValueError("Duration must be positive.")
            if 'total_marks' in data:
                exam.total_marks = float(data['total_marks']) if data['total_marks'] is not None else None
            if 'questions' in data:
                new_questions = _parse_questions(data['questions'])
                for old in exam.questions.all():
                    db.session.delete(old)
                for question in new_questions:
                    question.exam_id = exam.id
                    db.session.add(question)
            db.session.commit()
        except (ValueError, TypeError) as ve:
            db.session.rollback()
            app.logger.warning(f"Invalid data provided for exam update (ID: {exam_id}): {ve}")
            return jsonify({"message": f"Invalid data provided: {ve}"}), 400
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.exception(f"Error updating exam {exam_id}: {e}")
            return jsonify({"message": "Internal server error updating exam."}), 500
        app.logger.info(f"Exam '{exam.title}' (ID: {exam_id}) updated.")
        return jsonify(exam.to_dict(include_questions=True))

    @app.route('/api/admin/exams/<int:exam_id>/import_csv', methods=['POST'])
    @staff_required
    def import_questions_from_csv(exam_id):
        """Appends multiple-choice questions from a CSV upload."""
        exam = db.session.get(Exam, exam_id)
        if not exam: return jsonify({"message": "Exam not found"}), 404
        if exam.attempts.count() > 0:
            return jsonify({"message": "Questions cannot change once attempts have started."}), 409

        if 'file' not in request.files: return jsonify({"message": "No file part in the request"}), 400
        file = request.files['file']
        if not file or file.filename == '': return jsonify({"message": "No selected file"}), 400
        if not file.filename.lower().endswith('.csv'):
            return jsonify({"message": "Invalid file type. Please upload a CSV file."}), 400

        try:
            # utf-8-sig drops a BOM if present
            stream = io.StringIO(file.stream.read().decode("utf-8-sig"), newline=None)
            df = pd.read_csv(stream, skipinitialspace=True)
        except pd.errors.EmptyDataError:
            return jsonify({"message": "CSV file is empty or contains only headers."}), 400
        except UnicodeDecodeError:
            app.logger.warning(f"CSV file for exam {exam_id} is not valid UTF-8.")
            return jsonify({"message": "Invalid file encoding. Please ensure the CSV file is saved as UTF-8."}), 400

        df.columns = [str(col).lower().strip() for col in df.columns]
        required_columns = ['question', 'option1', 'option2', 'correct_answer']
        missing_headers = [col for col in required_columns if col not in df.columns]
        if missing_headers:
            return jsonify({"message": f"CSV file is missing required columns: {', '.join(missing_headers)}"}), 400

        next_position = exam.questions.count()
        payload, errors = [], []
        for index, row in df.iterrows():
            options = [str(row[f'option{i}']).strip() for i in range(1, 7)
                       if f'option{i}' in df.columns and pd.notna(row[f'option{i}']) and str(row[f'option{i}']).strip()]
            item = {
                'text': str(row['question']).strip() if pd.notna(row['question']) else '',
                'options': options,
                'correct_answer': str(row['correct_answer']).strip() if pd.notna(row['correct_answer']) else '',
                'marks': row['marks'] if 'marks' in df.columns and pd.notna(row['marks']) else 1,
            }
            try:
                _parse_questions([item])
            except ValueError as e:
                errors.append(f"Row {index + 2}: {e}")
                continue
            payload.append(item)

        if errors:
            app.logger.warning(f"CSV import failed for exam {exam_id} due to row errors:\n" + "\n".join(errors))
            return jsonify({"message": "Import failed due to errors in some rows.", "errors": errors}), 400
        if not payload:
            return jsonify({"message": "No valid questions found in the CSV file to import."}), 400

        new_questions = _parse_questions(payload, start_position=next_position)
        try:
            for question in new_questions:
                question.exam_id = exam.id
            db.session.add_all(new_questions)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            app.logger.exception(f"Error importing CSV for exam {exam_id}: {e}")
            return jsonify({"message": "An error occurred while saving imported questions."}), 500
        app.logger.info(f"Successfully imported {len(new_questions)} questions via CSV for exam {exam_id}.")
        return jsonify({"message": f"Successfully imported {len(new_questions)} questions for exam '{exam.title}'.",
                        "imported": len(new_questions)}), 201

    @app.route('/api/admin/exams/<int:exam_id>/results', methods=['GET'])
    @staff_required
    def get_exam_results(exam_id):
        exam = db.session.get(Exam, exam_id)
        if not exam:
            return jsonify({"message": "Exam not found"}), 404
        attempts = exam.attempts.order_by(ExamAttempt.started_at.asc()).all()
        rows = []
        for attempt in attempts:
            row = attempt.to_dict()
            row['username'] = attempt.student.username if attempt.student else None
            rows.append(row)
        submitted = [a for a in attempts if a.submitted]
        summary = {
            'attempts': len(attempts),
            'submitted': len(submitted),
            'averagePercentage': round(sum(a.percentage or 0 for a in submitted) / len(submitted), 2) if submitted else None,
            'passed': sum(1 for a in submitted if a.passed),
        }
        return jsonify({'exam': exam.to_dict(), 'summary': summary, 'results': rows})

    @app.route('/api/admin/dashboard/notifications', methods=['GET'])
    @admin_required
    def get_recent_notifications():
        try: limit = min(int(request.args.get('limit', 20)), 100)
        except ValueError: return jsonify({"message": "limit must be an integer."}), 400
        since = datetime.now(timezone.utc) - timedelta(days=7)
        logs = (NotificationLog.query.filter(NotificationLog.timestamp >= since)
                .order_by(NotificationLog.timestamp.desc()).limit(limit).all())
        return jsonify([entry.to_dict() for entry in logs])

    # --- CLI ---
    @app.cli.command('close-overdue-attempts')
    def close_overdue_attempts():
        """Auto-submit open attempts whose deadline has passed."""
        closed = tracker.close_overdue()
        click.echo(f"Closed {len(closed)} overdue attempt(s).")

    @app.route('/')
    def home():
        return 'Exam portal API is running!'

    return app
