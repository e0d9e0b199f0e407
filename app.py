import os
import logging
import sqlite3
import uuid
from pathlib import Path
from datetime import datetime, timedelta
from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException, BadRequest, NotFound

from risk_scoring import (
    HazardAssessment,
    InvalidRiskFactor,
    RiskFactor,
    RiskLevel,
    risk_matrix,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REQUIRED_RA_FIELDS = ('title', 'activity', 'location', 'assessor_id')
EDITABLE_RA_FIELDS = REQUIRED_RA_FIELDS
HAZARD_TEXT_FIELDS = ('hazard', 'who_might_be_harmed', 'existing_controls', 'additional_controls')
CAPA_PRIORITIES = ('low', 'medium', 'high')
REQUIRED_REGISTER_FIELDS = ('title', 'description', 'location')
REGISTER_TEXT_FIELDS = REQUIRED_REGISTER_FIELDS + ('category', 'controls', 'owner', 'status')


class RiskAssessmentSystem:
    def __init__(self, config=None):
        self.app = Flask(__name__)
        self.app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'ehs-secret-key-2024')
        self.app.config['MAX_CONTENT_LENGTH'] = 1 * 1024 * 1024  # 1MB, JSON only
        self.app.config['DATABASE_PATH'] = os.environ.get('EHS_DB_PATH', 'data/smart_ehs.db')
        self.app.config['ACTION_TARGET_DAYS'] = int(os.environ.get('ACTION_TARGET_DAYS', 14))
        if config:
            self.app.config.update(config)

        self.db_path = self.app.config['DATABASE_PATH']

        # Initialize database
        self.setup_database()

        # Load scoring scales
        self.load_scoring_data()

        # Setup routes
        self.setup_routes()

        logger.info("Risk assessment system initialized successfully")

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def setup_database(self):
        """Setup SQLite database for risk assessments, hazards and CAPAs"""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS risk_assessments (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                activity TEXT NOT NULL,
                location TEXT NOT NULL,
                assessor_id TEXT NOT NULL,
                version INTEGER DEFAULT 1,
                status TEXT DEFAULT 'draft',
                created_at TIMESTAMP NOT NULL,
                published_at TIMESTAMP
            )
        ''')

        # Only the four raw ratings are stored; score and level are derived on read
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS risk_hazards (
                id TEXT PRIMARY KEY,
                ra_id TEXT NOT NULL REFERENCES risk_assessments(id),
                position INTEGER NOT NULL,
                hazard TEXT NOT NULL,
                who_might_be_harmed TEXT,
                existing_controls TEXT,
                likelihood_before INTEGER NOT NULL DEFAULT 1,
                severity_before INTEGER NOT NULL DEFAULT 1,
                additional_controls TEXT,
                likelihood_after INTEGER NOT NULL DEFAULT 1,
                severity_after INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Standalone hazard register, one likelihood/severity pair per hazard
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS hazards (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                location TEXT NOT NULL,
                category TEXT,
                controls TEXT,
                owner TEXT,
                likelihood INTEGER NOT NULL,
                severity INTEGER NOT NULL,
                status TEXT DEFAULT 'open',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP
            )
        ''')

        # CAPA tracking table
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS capa_actions (
                id TEXT PRIMARY KEY,
                source_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                description TEXT NOT NULL,
                assigned_to TEXT,
                due_date DATE,
                status TEXT DEFAULT 'open',
                priority TEXT DEFAULT 'medium',
                created_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP
            )
        ''')

        conn.commit()
        conn.close()
        logger.info(f"Database setup completed at {self.db_path}")

    def load_scoring_data(self):
        """Load the 1-5 likelihood and severity scales used by the risk matrix"""
        self.likelihood_scale = {
            1: {'label': 'Rare', 'description': 'Extremely unlikely but theoretically possible'},
            2: {'label': 'Unlikely', 'description': 'Could happen in exceptional cases'},
            3: {'label': 'Possible', 'description': 'Might happen occasionally'},
            4: {'label': 'Likely', 'description': 'Expected to happen regularly'},
            5: {'label': 'Almost Certain', 'description': 'Will almost certainly happen, repeatedly'}
        }

        self.severity_scale = {
            1: {'label': 'Negligible', 'description': 'No injury or first aid only'},
            2: {'label': 'Minor', 'description': 'Medical treatment, no lost time'},
            3: {'label': 'Moderate', 'description': 'Lost time injury, no hospitalization'},
            4: {'label': 'Major', 'description': 'Serious injury, hospitalization or permanent disability'},
            5: {'label': 'Catastrophic', 'description': 'Single or multiple fatalities'}
        }

    def setup_routes(self):
        """Setup Flask routes"""

        @self.app.errorhandler(HTTPException)
        def handle_http_error(error):
            return jsonify({'success': False, 'error': error.description}), error.code

        @self.app.route('/health')
        def health():
            return jsonify({
                'status': 'healthy',
                'timestamp': datetime.now().isoformat(),
                'modules': ['risk_assessments', 'hazard_register', 'risk_matrix', 'capa_actions']
            })

        @self.app.route('/api/risk/scales')
        def get_risk_scales():
            return jsonify({
                'likelihood': self.likelihood_scale,
                'severity': self.severity_scale
            })

        @self.app.route('/api/risk/matrix')
        def get_risk_matrix():
            return jsonify({'matrix': risk_matrix()})

        @self.app.route('/api/risk/score', methods=['POST'])
        def score_risk():
            return self.score_risk_factor()

        @self.app.route('/api/ra', methods=['POST'])
        def create_risk_assessment():
            return self.create_risk_assessment()

        @self.app.route('/api/ra')
        def list_risk_assessments():
            return self.list_risk_assessments()

        @self.app.route('/api/ra/<ra_id>')
        def get_risk_assessment(ra_id):
            return self.get_risk_assessment(ra_id)

        @self.app.route('/api/ra/<ra_id>', methods=['PATCH'])
        def update_risk_assessment(ra_id):
            return self.update_risk_assessment(ra_id)

        @self.app.route('/api/ra/<ra_id>/publish', methods=['POST'])
        def publish_risk_assessment(ra_id):
            return self.publish_risk_assessment(ra_id)

        @self.app.route('/api/ra/<ra_id>/actions', methods=['POST'])
        def create_ra_actions(ra_id):
            return self.create_actions_from_controls(ra_id)

        @self.app.route('/api/hazards', methods=['POST'])
        def create_hazard():
            return self.create_register_hazard()

        @self.app.route('/api/hazards')
        def list_hazards():
            return self.list_register_hazards()

        @self.app.route('/api/hazards/<hazard_id>', methods=['PUT'])
        def update_hazard(hazard_id):
            return self.update_register_hazard(hazard_id)

        @self.app.route('/api/capa', methods=['POST'])
        def create_capa():
            return self.create_capa_action()

        @self.app.route('/api/capa')
        def get_capas():
            return self.get_capa_actions()

        @self.app.route('/api/dashboard-stats')
        def dashboard_stats():
            return self.get_dashboard_stats()

    def get_json_body(self):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise BadRequest('Request body must be a JSON object')
        return data

    def parse_hazards(self, hazards):
        """Validate submitted hazards and return rows ready for insertion"""
        if not isinstance(hazards, list):
            raise BadRequest('hazards must be a list')

        rows = []
        for index, hazard in enumerate(hazards, start=1):
            if not isinstance(hazard, dict):
                raise BadRequest(f'Hazard {index} must be an object')
            if not self._text(hazard.get('hazard')):
                raise BadRequest(f'Hazard {index} is missing a description')

            try:
                before = RiskFactor.from_values(
                    self._rating(hazard, 'likelihood_before'),
                    self._rating(hazard, 'severity_before')
                )
                after = RiskFactor.from_values(
                    self._rating(hazard, 'likelihood_after'),
                    self._rating(hazard, 'severity_after')
                )
            except InvalidRiskFactor as e:
                raise BadRequest(f'Hazard {index}: {e}')

            row = {field: self._text(hazard.get(field)) for field in HAZARD_TEXT_FIELDS}
            row.update({
                'likelihood_before': before.likelihood,
                'severity_before': before.severity,
                'likelihood_after': after.likelihood,
                'severity_after': after.severity
            })
            rows.append(row)
        return rows

    @staticmethod
    def _text(value):
        return '' if value is None else str(value).strip()

    @staticmethod
    def _rating(hazard, field):
        # Unset ratings default to 1
        value = hazard.get(field)
        return 1 if value is None or value == '' else value

    def insert_hazards(self, cursor, ra_id, rows, start=0):
        for position, row in enumerate(rows, start=start):
            cursor.execute('''
                INSERT INTO risk_hazards (
                    id, ra_id, position, hazard, who_might_be_harmed, existing_controls,
                    likelihood_before, severity_before, additional_controls,
                    likelihood_after, severity_after
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                str(uuid.uuid4()), ra_id, position,
                row['hazard'], row['who_might_be_harmed'], row['existing_controls'],
                row['likelihood_before'], row['severity_before'], row['additional_controls'],
                row['likelihood_after'], row['severity_after']
            ))

    def replace_hazards(self, cursor, ra_id, rows):
        """Overwrite hazards in place by position so hazard ids, and the CAPAs
        that reference them, survive an edit"""
        cursor.execute(
            'SELECT id FROM risk_hazards WHERE ra_id = ? ORDER BY position',
            (ra_id,)
        )
        existing_ids = [row['id'] for row in cursor.fetchall()]

        for hazard_id, row in zip(existing_ids, rows):
            cursor.execute('''
                UPDATE risk_hazards SET
                    hazard = ?, who_might_be_harmed = ?, existing_controls = ?,
                    likelihood_before = ?, severity_before = ?, additional_controls = ?,
                    likelihood_after = ?, severity_after = ?
                WHERE id = ?
            ''', (
                row['hazard'], row['who_might_be_harmed'], row['existing_controls'],
                row['likelihood_before'], row['severity_before'], row['additional_controls'],
                row['likelihood_after'], row['severity_after'],
                hazard_id
            ))

        for hazard_id in existing_ids[len(rows):]:
            cursor.execute('DELETE FROM risk_hazards WHERE id = ?', (hazard_id,))
        self.insert_hazards(cursor, ra_id, rows[len(existing_ids):], start=len(existing_ids))

    def serialize_hazard(self, row):
        """Hazard record with scores and levels recomputed from its raw ratings"""
        hazard = {
            'id': row['id'],
            'hazard': row['hazard'],
            'who_might_be_harmed': row['who_might_be_harmed'],
            'existing_controls': row['existing_controls'],
            'additional_controls': row['additional_controls'],
            'likelihood_before': row['likelihood_before'],
            'severity_before': row['severity_before'],
            'likelihood_after': row['likelihood_after'],
            'severity_after': row['severity_after']
        }
        try:
            assessment = HazardAssessment.from_record(row)
        except InvalidRiskFactor as e:
            logger.warning(f"Hazard {row['id']} has invalid ratings: {e}")
            hazard['error'] = str(e)
            return hazard

        hazard.update(assessment.to_dict())
        return hazard

    def fetch_risk_assessment(self, cursor, ra_id):
        cursor.execute('SELECT * FROM risk_assessments WHERE id = ?', (ra_id,))
        ra = cursor.fetchone()
        if ra is None:
            raise NotFound('Risk assessment not found')
        return ra

    def score_risk_factor(self):
        """Score a single likelihood/severity pair for live form feedback"""
        data = self.get_json_body()
        try:
            factor = RiskFactor.from_values(data.get('likelihood'), data.get('severity'))
        except InvalidRiskFactor as e:
            raise BadRequest(str(e))
        return jsonify(factor.to_dict())

    def create_risk_assessment(self):
        """Create a draft risk assessment together with its hazards"""
        data = self.get_json_body()
        missing = [field for field in REQUIRED_RA_FIELDS if not self._text(data.get(field))]
        if missing:
            raise BadRequest(f"Missing required fields: {', '.join(missing)}")
        rows = self.parse_hazards(data.get('hazards') or [])

        try:
            ra_id = str(uuid.uuid4())
            created_at = datetime.now().isoformat()

            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                cursor.execute('''
                    INSERT INTO risk_assessments (
                        id, title, activity, location, assessor_id, version, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, 1, 'draft', ?)
                ''', (
                    ra_id,
                    str(data['title']).strip(),
                    str(data['activity']).strip(),
                    str(data['location']).strip(),
                    str(data['assessor_id']).strip(),
                    created_at
                ))
                self.insert_hazards(cursor, ra_id, rows)
                conn.commit()
            finally:
                conn.close()

            logger.info(f"Risk assessment {ra_id} created with {len(rows)} hazards")
            return jsonify({
                'success': True,
                'id': ra_id,
                'title': str(data['title']).strip(),
                'version': 1,
                'status': 'draft',
                'created_at': created_at,
                'message': 'Risk assessment created successfully'
            }), 201

        except Exception as e:
            logger.error(f"Error creating risk assessment: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def list_risk_assessments(self):
        """List risk assessments, newest first"""
        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            cursor.execute('''
                SELECT ra.id, ra.title, ra.activity, ra.location, ra.assessor_id,
                       ra.version, ra.status, ra.created_at, ra.published_at,
                       COUNT(h.id) AS hazard_count
                FROM risk_assessments ra
                LEFT JOIN risk_hazards h ON h.ra_id = ra.id
                GROUP BY ra.id
                ORDER BY ra.created_at DESC, ra.rowid DESC
            ''')
            assessments = [dict(row) for row in cursor.fetchall()]
            conn.close()

            return jsonify({
                'risk_assessments': assessments,
                'count': len(assessments)
            })

        except Exception as e:
            logger.error(f"Error listing risk assessments: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def get_risk_assessment(self, ra_id):
        """Get one risk assessment with classified hazards"""
        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                ra = self.fetch_risk_assessment(cursor, ra_id)
                cursor.execute(
                    'SELECT * FROM risk_hazards WHERE ra_id = ? ORDER BY position',
                    (ra_id,)
                )
                hazards = [self.serialize_hazard(row) for row in cursor.fetchall()]
            finally:
                conn.close()

            result = dict(ra)
            result['hazards'] = hazards
            result['follow_up_count'] = sum(1 for h in hazards if h.get('needs_follow_up'))
            return jsonify(result)

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting risk assessment {ra_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def update_risk_assessment(self, ra_id):
        """Update a draft risk assessment; a hazards list replaces the hazards by position"""
        data = self.get_json_body()

        updates = {}
        for field in EDITABLE_RA_FIELDS:
            if field in data:
                value = self._text(data[field])
                if not value:
                    raise BadRequest(f'{field} cannot be empty')
                updates[field] = value
        rows = self.parse_hazards(data['hazards']) if 'hazards' in data else None

        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                ra = self.fetch_risk_assessment(cursor, ra_id)
                if ra['status'] == 'published':
                    raise BadRequest('Cannot edit published risk assessment')

                if updates:
                    assignments = ', '.join(f'{field} = ?' for field in updates)
                    cursor.execute(
                        f'UPDATE risk_assessments SET {assignments} WHERE id = ?',
                        (*updates.values(), ra_id)
                    )
                if rows is not None:
                    self.replace_hazards(cursor, ra_id, rows)
                conn.commit()

                updated = dict(self.fetch_risk_assessment(cursor, ra_id))
            finally:
                conn.close()

            logger.info(f"Risk assessment {ra_id} updated")
            updated.update({'success': True, 'message': 'Risk assessment updated successfully'})
            return jsonify(updated)

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating risk assessment {ra_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def publish_risk_assessment(self, ra_id):
        """Publish a draft risk assessment, locking it against edits"""
        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                ra = self.fetch_risk_assessment(cursor, ra_id)
                if ra['status'] == 'published':
                    raise BadRequest('Risk assessment is already published')

                published_at = datetime.now().isoformat()
                cursor.execute(
                    "UPDATE risk_assessments SET status = 'published', published_at = ? WHERE id = ?",
                    (published_at, ra_id)
                )
                conn.commit()
            finally:
                conn.close()

            self.notify_published(ra)
            return jsonify({
                'success': True,
                'id': ra_id,
                'title': ra['title'],
                'version': ra['version'],
                'status': 'published',
                'published_at': published_at,
                'message': 'Risk assessment published successfully'
            })

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error publishing risk assessment {ra_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def notify_published(self, ra):
        logger.info(
            f"Risk assessment published: RA-{ra['id']} '{ra['title']}' "
            f"by assessor {ra['assessor_id']}"
        )

    def create_actions_from_controls(self, ra_id):
        """Create corrective actions for hazards whose residual risk is still High or Very High"""
        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                ra = self.fetch_risk_assessment(cursor, ra_id)
                cursor.execute(
                    'SELECT * FROM risk_hazards WHERE ra_id = ? ORDER BY position',
                    (ra_id,)
                )
                hazards = cursor.fetchall()

                target_days = self.app.config['ACTION_TARGET_DAYS']
                due_date = (datetime.now() + timedelta(days=target_days)).date().isoformat()
                created = []
                eligible = 0
                skipped = 0

                for row in hazards:
                    controls = (row['additional_controls'] or '').strip()
                    if not controls:
                        continue
                    try:
                        assessment = HazardAssessment.from_record(row)
                    except InvalidRiskFactor as e:
                        logger.warning(f"Skipping hazard {row['id']} with invalid ratings: {e}")
                        continue
                    if not assessment.needs_follow_up:
                        continue

                    eligible += 1
                    cursor.execute(
                        "SELECT COUNT(*) FROM capa_actions WHERE source_id = ? AND status = 'open'",
                        (row['id'],)
                    )
                    if cursor.fetchone()[0]:
                        skipped += 1
                        continue

                    residual = assessment.after_controls.level
                    priority = 'high' if residual is RiskLevel.VERY_HIGH else 'medium'
                    capa_id = str(uuid.uuid4())
                    cursor.execute('''
                        INSERT INTO capa_actions (
                            id, source_type, source_id, action_type, description,
                            assigned_to, due_date, priority, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', (
                        capa_id,
                        'risk_assessment',
                        row['id'],
                        'corrective',
                        f"Risk Assessment Action: {row['hazard']} - Created from RA: "
                        f"{ra['title']} (ID: {ra_id}). Controls: {controls}",
                        None,
                        due_date,
                        priority,
                        datetime.now().isoformat()
                    ))
                    created.append(capa_id)

                conn.commit()
            finally:
                conn.close()

            logger.info(f"Created {len(created)} actions from risk assessment {ra_id}")
            return jsonify({
                'success': True,
                'created_actions': len(created),
                'capa_ids': created,
                'eligible_hazards': eligible,
                'skipped_existing': skipped,
                'ra_id': ra_id,
                'ra_title': ra['title'],
                'message': f'Created {len(created)} actions from additional controls'
            })

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating actions for risk assessment {ra_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def serialize_register_hazard(self, row):
        """Register entry with score and level recomputed from its ratings"""
        hazard = dict(row)
        try:
            factor = RiskFactor.from_values(row['likelihood'], row['severity'])
        except InvalidRiskFactor as e:
            logger.warning(f"Register hazard {row['id']} has invalid ratings: {e}")
            hazard['error'] = str(e)
            return hazard

        hazard.update(factor.to_dict())
        return hazard

    def parse_register_factor(self, likelihood, severity):
        try:
            return RiskFactor.from_values(likelihood, severity)
        except InvalidRiskFactor as e:
            raise BadRequest(str(e))

    def create_register_hazard(self):
        """Add a hazard to the register"""
        data = self.get_json_body()
        missing = [field for field in REQUIRED_REGISTER_FIELDS if not self._text(data.get(field))]
        if missing:
            raise BadRequest(f"Missing required fields: {', '.join(missing)}")
        factor = self.parse_register_factor(data.get('likelihood'), data.get('severity'))
        fields = {field: self._text(data.get(field)) for field in REGISTER_TEXT_FIELDS}
        fields['status'] = fields['status'] or 'open'

        try:
            hazard_id = str(uuid.uuid4())
            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                cursor.execute('''
                    INSERT INTO hazards (
                        id, title, description, location, category, controls, owner,
                        likelihood, severity, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    hazard_id,
                    fields['title'], fields['description'], fields['location'],
                    fields['category'], fields['controls'], fields['owner'],
                    factor.likelihood, factor.severity, fields['status'],
                    datetime.now().isoformat()
                ))
                conn.commit()
                cursor.execute('SELECT * FROM hazards WHERE id = ?', (hazard_id,))
                row = cursor.fetchone()
            finally:
                conn.close()

            logger.info(f"Register hazard {hazard_id} created ({factor.level})")
            return jsonify({'success': True, 'hazard': self.serialize_register_hazard(row)}), 201

        except Exception as e:
            logger.error(f"Error creating register hazard: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def list_register_hazards(self):
        """List register hazards, newest first, filtered by status or risk level"""
        try:
            status = request.args.get('status', '')
            level = request.args.get('level', '')

            conn = self.get_connection()
            cursor = conn.cursor()

            query = 'SELECT * FROM hazards WHERE 1=1'
            params = []
            if status:
                query += ' AND status = ?'
                params.append(status)
            query += ' ORDER BY created_at DESC, rowid DESC'

            cursor.execute(query, params)
            rows = cursor.fetchall()
            conn.close()

            items = [self.serialize_register_hazard(row) for row in rows]
            # Level is derived, so it can only be filtered after classification
            if level:
                items = [item for item in items if item.get('level') == level]

            return jsonify({'items': items, 'count': len(items)})

        except Exception as e:
            logger.error(f"Error listing register hazards: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def update_register_hazard(self, hazard_id):
        """Update a register hazard; omitted fields keep their stored values"""
        data = self.get_json_body()
        for field in REQUIRED_REGISTER_FIELDS:
            if field in data and not self._text(data[field]):
                raise BadRequest(f'{field} cannot be empty')

        try:
            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                cursor.execute('SELECT * FROM hazards WHERE id = ?', (hazard_id,))
                existing = cursor.fetchone()
                if existing is None:
                    raise NotFound('Hazard not found')

                factor = self.parse_register_factor(
                    data.get('likelihood', existing['likelihood']),
                    data.get('severity', existing['severity'])
                )
                fields = {
                    field: self._text(data[field]) if field in data else existing[field]
                    for field in REGISTER_TEXT_FIELDS
                }
                fields['status'] = fields['status'] or 'open'

                cursor.execute('''
                    UPDATE hazards SET
                        title = ?, description = ?, location = ?, category = ?,
                        controls = ?, owner = ?, likelihood = ?, severity = ?,
                        status = ?, updated_at = ?
                    WHERE id = ?
                ''', (
                    fields['title'], fields['description'], fields['location'],
                    fields['category'], fields['controls'], fields['owner'],
                    factor.likelihood, factor.severity, fields['status'],
                    datetime.now().isoformat(), hazard_id
                ))
                conn.commit()
                cursor.execute('SELECT * FROM hazards WHERE id = ?', (hazard_id,))
                row = cursor.fetchone()
            finally:
                conn.close()

            logger.info(f"Register hazard {hazard_id} updated")
            return jsonify({'success': True, 'hazard': self.serialize_register_hazard(row)})

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating register hazard {hazard_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def create_capa_action(self):
        """Create CAPA action from incident, concern, or audit finding"""
        data = self.get_json_body()
        description = self._text(data.get('description'))
        if not description:
            raise BadRequest('description is required')
        priority = data.get('priority', 'medium')
        if priority not in CAPA_PRIORITIES:
            raise BadRequest(f"priority must be one of: {', '.join(CAPA_PRIORITIES)}")

        try:
            capa_id = str(uuid.uuid4())

            conn = self.get_connection()
            cursor = conn.cursor()
            try:
                cursor.execute('''
                    INSERT INTO capa_actions (
                        id, source_type, source_id, action_type, description,
                        assigned_to, due_date, priority, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    capa_id,
                    data.get('source_type', 'manual'),
                    data.get('source_id', ''),
                    data.get('action_type', 'corrective'),
                    description,
                    data.get('assigned_to', ''),
                    data.get('due_date', ''),
                    priority,
                    datetime.now().isoformat()
                ))
                conn.commit()
            finally:
                conn.close()

            return jsonify({
                'success': True,
                'capa_id': capa_id,
                'message': 'CAPA action created successfully'
            }), 201

        except Exception as e:
            logger.error(f"Error creating CAPA: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def get_capa_actions(self):
        """Get all CAPA actions with filtering"""
        try:
            status = request.args.get('status', '')
            priority = request.args.get('priority', '')

            conn = self.get_connection()
            cursor = conn.cursor()

            query = 'SELECT * FROM capa_actions WHERE 1=1'
            params = []

            if status:
                query += ' AND status = ?'
                params.append(status)
            if priority:
                query += ' AND priority = ?'
                params.append(priority)

            query += ' ORDER BY created_at DESC'

            cursor.execute(query, params)
            capas = [dict(row) for row in cursor.fetchall()]
            conn.close()

            return jsonify({'capas': capas})

        except Exception as e:
            logger.error(f"Error getting CAPAs: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    def get_dashboard_stats(self):
        """Get dashboard statistics with risk levels recomputed from raw ratings"""
        try:
            conn = self.get_connection()
            cursor = conn.cursor()

            cursor.execute('SELECT status, COUNT(*) FROM risk_assessments GROUP BY status')
            by_status = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute("SELECT COUNT(*) FROM capa_actions WHERE status = 'open'")
            open_capas = cursor.fetchone()[0]

            cursor.execute('SELECT * FROM risk_hazards')
            hazards = cursor.fetchall()

            cursor.execute('SELECT likelihood, severity FROM hazards')
            register = cursor.fetchall()
            conn.close()

            before_distribution = {level.value: 0 for level in RiskLevel}
            after_distribution = {level.value: 0 for level in RiskLevel}
            follow_up = 0
            invalid = 0
            for row in hazards:
                try:
                    assessment = HazardAssessment.from_record(row)
                except InvalidRiskFactor:
                    invalid += 1
                    continue
                before_distribution[assessment.before_controls.level.value] += 1
                after_distribution[assessment.after_controls.level.value] += 1
                if assessment.needs_follow_up:
                    follow_up += 1

            register_distribution = {level.value: 0 for level in RiskLevel}
            for row in register:
                try:
                    factor = RiskFactor.from_values(row['likelihood'], row['severity'])
                except InvalidRiskFactor:
                    continue
                register_distribution[factor.level.value] += 1

            return jsonify({
                'total_risk_assessments': sum(by_status.values()),
                'risk_assessments_by_status': by_status,
                'total_hazards': len(hazards),
                'invalid_hazards': invalid,
                'hazards_needing_follow_up': follow_up,
                'open_capa_actions': open_capas,
                'risk_distribution': {
                    'before_controls': before_distribution,
                    'after_controls': after_distribution
                },
                'total_register_hazards': len(register),
                'register_distribution': register_distribution
            })

        except Exception as e:
            logger.error(f"Error getting dashboard stats: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500


def create_app(config=None):
    return RiskAssessmentSystem(config).app


if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=False)
